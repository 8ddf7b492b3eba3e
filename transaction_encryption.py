"""
Field encryption for sensitive escrow data.

Payment method descriptors and banking details are sealed in a
``SecureEnvelope``:

    - AES-256-GCM with a random 96-bit IV; the security context string
      ``"<transaction_id>:<user_id>:<timestamp>"`` is the associated data
    - optionally a per-field key, derived with scrypt from the master key,
      the context string and a random 32-byte salt
    - a SHA-256 hash of the plaintext, checked after decryption
    - an HMAC-SHA256 signature over the whole envelope, checked first

Old keys stay in the keyring after ``rotate_keys`` so envelopes sealed
before a rotation still open.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, Field

from config import Config, ConfigError, get_config
from escrow_errors import ExpiredPayloadError, IntegrityFailure, ValidationError
from utils import utc_now

logger = logging.getLogger(__name__)

ALGORITHM = 'aes-256-gcm'
ENCRYPTION_VERSION = '1.0'
KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
SALT_LENGTH = 32

# scrypt cost parameters
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


class EncryptedBlob(BaseModel):
    ciphertext: str
    iv: str
    auth_tag: str
    algorithm: str = ALGORITHM
    salt: Optional[str] = None
    key_derivation: bool = False


class SecurityContext(BaseModel):
    transaction_id: str
    user_id: str
    timestamp: str

    def as_string(self) -> str:
        return f"{self.transaction_id}:{self.user_id}:{self.timestamp}"


class EnvelopeMetadata(BaseModel):
    data_hash: str
    encryption_version: str = ENCRYPTION_VERSION
    created_at: datetime
    expires_at: Optional[datetime] = None


class SecureEnvelope(BaseModel):
    id: str
    encrypted: EncryptedBlob
    context: SecurityContext
    metadata: EnvelopeMetadata
    signing_key_id: str
    signature: str = ""


class KeyRotationRecord(BaseModel):
    old_key_id: str
    new_key_id: str
    rotated_by: str
    rotated_at: datetime
    retained_keys: List[str] = Field(default_factory=list)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode('ascii'), validate=True)


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)


def _key_id(master_key: bytes, hmac_key: bytes) -> str:
    return hashlib.sha256(master_key + hmac_key).hexdigest()[:16]


def load_key(value: Optional[str], name: str, production: bool) -> bytes:
    """
    Decode a hex encoded 256-bit key from configuration.

    Args:
        value: Hex string (may be None)
        name: Environment variable name, for error messages
        production: Missing keys are fatal in production

    Returns:
        32 raw key bytes

    Raises:
        ConfigError: If the key is malformed, or missing in production
    """
    if not value:
        if production:
            raise ConfigError(f"{name} is required in production")
        logger.warning(
            f"{name} not set - generating a random key. "
            f"Data encrypted with it cannot be decrypted after a restart."
        )
        return os.urandom(KEY_LENGTH)

    try:
        key = bytes.fromhex(value)
    except ValueError:
        raise ConfigError(f"{name} must be hex encoded")

    if len(key) != KEY_LENGTH:
        raise ConfigError(f"{name} must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex chars), got {len(key)}")

    return key


class TransactionEncryptionService:
    """
    Authenticated encryption for transaction fields.

    Example:
        >>> service = TransactionEncryptionService(config=config)
        >>> envelope = service.encrypt_payment_method(method, 'ESC_1', 'user_42')
        >>> service.decrypt_payment_method(envelope, 'ESC_1', 'user_42')
    """

    def __init__(
        self,
        master_key: Optional[bytes] = None,
        hmac_key: Optional[bytes] = None,
        config: Optional[Config] = None,
        clock: Optional[Callable] = None
    ):
        """
        Initialize the encryption service.

        Keys passed explicitly win; otherwise ESCROW_MASTER_KEY and
        ESCROW_HMAC_KEY are read from configuration.

        Raises:
            ConfigError: If a configured key is invalid
        """
        self.config = config or get_config()
        self.clock = clock or utc_now

        if master_key is None:
            master_key = load_key(
                self.config.master_key_hex, 'ESCROW_MASTER_KEY', self.config.is_production
            )
        if hmac_key is None:
            hmac_key = load_key(
                self.config.hmac_key_hex, 'ESCROW_HMAC_KEY', self.config.is_production
            )
        self._check_key_pair(master_key, hmac_key)

        self._keyring: Dict[str, Tuple[bytes, bytes]] = {}
        self.active_key_id = _key_id(master_key, hmac_key)
        self._keyring[self.active_key_id] = (master_key, hmac_key)
        self.rotation_history: List[KeyRotationRecord] = []

        logger.info(f"Transaction encryption initialized (key id {self.active_key_id})")

    @staticmethod
    def _check_key_pair(master_key: bytes, hmac_key: bytes) -> None:
        if len(master_key) != KEY_LENGTH or len(hmac_key) != KEY_LENGTH:
            raise ConfigError(f"Encryption keys must be {KEY_LENGTH} bytes")

    # ==================== ENVELOPES ====================

    def encrypt(
        self,
        data: Any,
        transaction_id: str,
        user_id: str,
        use_key_derivation: bool = True,
        expires_in_hours: Optional[int] = None
    ) -> SecureEnvelope:
        """
        Encrypt a JSON-serializable value into a signed envelope.

        Args:
            data: Value to protect
            transaction_id: Transaction the value belongs to
            user_id: Owner of the value
            use_key_derivation: Derive a per-field key instead of using the master key
            expires_in_hours: Envelope lifetime; None never expires

        Returns:
            Signed SecureEnvelope
        """
        now = self.clock()
        context = SecurityContext(
            transaction_id=transaction_id,
            user_id=user_id,
            timestamp=now.isoformat()
        )
        plaintext = _canonical_json(data)
        master_key, hmac_key = self._keyring[self.active_key_id]

        encrypted = self._encrypt_blob(
            plaintext.encode('utf-8'), context.as_string(), master_key, use_key_derivation
        )
        metadata = EnvelopeMetadata(
            data_hash=hashlib.sha256(plaintext.encode('utf-8')).hexdigest(),
            created_at=now,
            expires_at=now + timedelta(hours=expires_in_hours) if expires_in_hours else None
        )
        envelope = SecureEnvelope(
            id=uuid.uuid4().hex,
            encrypted=encrypted,
            context=context,
            metadata=metadata,
            signing_key_id=self.active_key_id
        )
        envelope.signature = self._sign(envelope, hmac_key)
        return envelope

    def decrypt(
        self,
        envelope: SecureEnvelope,
        transaction_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Any:
        """
        Verify and open an envelope.

        Checks run in order: signature, expiry, context, AEAD tag,
        plaintext hash.

        Args:
            envelope: Envelope produced by ``encrypt``
            transaction_id: If given, must match the sealed context
            user_id: If given, must match the sealed context

        Returns:
            The original value

        Raises:
            IntegrityFailure: If any integrity check fails
            ExpiredPayloadError: If the envelope is past its expiry
        """
        keys = self._keyring.get(envelope.signing_key_id)
        if keys is None:
            raise IntegrityFailure(
                f"Unknown signing key {envelope.signing_key_id}",
                envelope.context.transaction_id
            )
        master_key, hmac_key = keys

        expected = self._sign(envelope, hmac_key)
        if not hmac.compare_digest(expected, envelope.signature):
            logger.warning(f"Signature mismatch on envelope {envelope.id}")
            raise IntegrityFailure("Envelope signature is invalid", envelope.context.transaction_id)

        expires_at = envelope.metadata.expires_at
        if expires_at is not None and self.clock() >= expires_at:
            raise ExpiredPayloadError(
                f"Encrypted data expired at {expires_at.isoformat()}",
                envelope.context.transaction_id
            )

        if transaction_id is not None and envelope.context.transaction_id != transaction_id:
            raise IntegrityFailure("Security context transaction mismatch", transaction_id)
        if user_id is not None and envelope.context.user_id != user_id:
            raise IntegrityFailure(
                "Security context user mismatch", envelope.context.transaction_id
            )

        plaintext = self._decrypt_blob(
            envelope.encrypted, envelope.context.as_string(), master_key,
            envelope.context.transaction_id
        )

        if hashlib.sha256(plaintext).hexdigest() != envelope.metadata.data_hash:
            raise IntegrityFailure("Data hash mismatch", envelope.context.transaction_id)

        return json.loads(plaintext.decode('utf-8'))

    def _sign(self, envelope: SecureEnvelope, hmac_key: bytes) -> str:
        payload = _canonical_json(envelope.model_dump(mode='json', exclude={'signature'}))
        return hmac.new(hmac_key, payload.encode('utf-8'), hashlib.sha256).hexdigest()

    # ==================== AEAD ====================

    def _derive_key(self, master_key: bytes, context: str, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
        return kdf.derive(master_key + context.encode('utf-8'))

    def _encrypt_blob(
        self,
        plaintext: bytes,
        context: str,
        master_key: bytes,
        use_key_derivation: bool
    ) -> EncryptedBlob:
        salt = None
        key = master_key
        if use_key_derivation:
            salt = os.urandom(SALT_LENGTH)
            key = self._derive_key(master_key, context, salt)

        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(key).encrypt(iv, plaintext, context.encode('utf-8'))

        return EncryptedBlob(
            ciphertext=_b64(sealed[:-TAG_LENGTH]),
            iv=_b64(iv),
            auth_tag=_b64(sealed[-TAG_LENGTH:]),
            salt=_b64(salt) if salt else None,
            key_derivation=use_key_derivation
        )

    def _decrypt_blob(
        self,
        blob: EncryptedBlob,
        context: str,
        master_key: bytes,
        transaction_id: str
    ) -> bytes:
        if blob.algorithm != ALGORITHM:
            raise IntegrityFailure(f"Unsupported algorithm: {blob.algorithm}", transaction_id)

        try:
            iv = _unb64(blob.iv)
            ciphertext = _unb64(blob.ciphertext)
            tag = _unb64(blob.auth_tag)
            key = master_key
            if blob.key_derivation:
                if not blob.salt:
                    raise IntegrityFailure("Missing key derivation salt", transaction_id)
                key = self._derive_key(master_key, context, _unb64(blob.salt))
        except (binascii.Error, ValueError) as e:
            raise IntegrityFailure(f"Malformed encrypted payload: {e}", transaction_id) from e

        try:
            return AESGCM(key).decrypt(iv, ciphertext + tag, context.encode('utf-8'))
        except (InvalidTag, ValueError) as e:
            logger.warning(f"Authentication tag check failed for {transaction_id}")
            raise IntegrityFailure("Authentication tag check failed", transaction_id) from e

    # ==================== FIELD HELPERS ====================

    def encrypt_payment_method(
        self,
        payment_method: Dict[str, Any],
        transaction_id: str,
        user_id: str
    ) -> SecureEnvelope:
        return self.encrypt(
            payment_method, transaction_id, user_id,
            use_key_derivation=True,
            expires_in_hours=self.config.payment_method_ttl_hours
        )

    def decrypt_payment_method(
        self,
        envelope: SecureEnvelope,
        transaction_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return self.decrypt(envelope, transaction_id, user_id)

    def encrypt_banking_details(
        self,
        banking_details: Dict[str, Any],
        transaction_id: str,
        user_id: str
    ) -> SecureEnvelope:
        return self.encrypt(
            banking_details, transaction_id, user_id,
            use_key_derivation=True,
            expires_in_hours=self.config.banking_details_ttl_hours
        )

    def decrypt_banking_details(
        self,
        envelope: SecureEnvelope,
        transaction_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return self.decrypt(envelope, transaction_id, user_id)

    # ==================== KEY ROTATION ====================

    def rotate_keys(self, new_master_key: bytes, new_hmac_key: bytes, rotated_by: str) -> KeyRotationRecord:
        """
        Make a new key pair active.

        Previous pairs are kept so existing envelopes still decrypt.

        Raises:
            ValidationError: If a key is not 32 bytes
        """
        if len(new_master_key) != KEY_LENGTH or len(new_hmac_key) != KEY_LENGTH:
            raise ValidationError(f"Encryption keys must be {KEY_LENGTH} bytes")

        old_key_id = self.active_key_id
        new_key_id = _key_id(new_master_key, new_hmac_key)
        self._keyring[new_key_id] = (new_master_key, new_hmac_key)
        self.active_key_id = new_key_id

        record = KeyRotationRecord(
            old_key_id=old_key_id,
            new_key_id=new_key_id,
            rotated_by=rotated_by,
            rotated_at=self.clock(),
            retained_keys=sorted(k for k in self._keyring if k != new_key_id)
        )
        self.rotation_history.append(record)

        logger.warning(
            f"🔑 AUDIT: encryption keys rotated by {rotated_by}: "
            f"{old_key_id} -> {new_key_id} ({len(self._keyring)} keys retained)"
        )
        return record


# Singleton instance
_encryption_service: Optional[TransactionEncryptionService] = None


def get_encryption_service(config: Optional[Config] = None) -> TransactionEncryptionService:
    """Get or create the process-wide encryption service (keys are loaded once)."""
    global _encryption_service

    if _encryption_service is None:
        _encryption_service = TransactionEncryptionService(config=config)

    return _encryption_service
