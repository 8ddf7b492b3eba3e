"""
Book catalog port.

The escrow core only needs two things from the catalog: the declared
price of a listing and a switch for its availability. Catalog CRUD is
owned elsewhere.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Optional

import asyncpg
from pydantic import BaseModel, field_validator

from database import Database, DatabaseError
from utils import to_money

logger = logging.getLogger(__name__)


class BookListing(BaseModel):
    book_id: str
    lender_id: str
    title: str = ""
    rental_fee: Decimal
    security_deposit: Decimal
    is_available: bool = True

    @field_validator('rental_fee', 'security_deposit')
    @classmethod
    def _round(cls, value: Decimal) -> Decimal:
        return to_money(value)

    @property
    def total_price(self) -> Decimal:
        return self.rental_fee + self.security_deposit


class BookCatalog(ABC):

    @abstractmethod
    async def get_listing(self, book_id: str) -> Optional[BookListing]:
        ...

    @abstractmethod
    async def set_availability(self, book_id: str, available: bool) -> None:
        ...


class InMemoryBookCatalog(BookCatalog):
    """Catalog backed by a dict; used by tests and local runs."""

    def __init__(self, listings: Optional[Dict[str, BookListing]] = None):
        self.listings: Dict[str, BookListing] = dict(listings or {})

    def add(self, listing: BookListing) -> BookListing:
        self.listings[listing.book_id] = listing
        return listing

    async def get_listing(self, book_id: str) -> Optional[BookListing]:
        listing = self.listings.get(book_id)
        return listing.model_copy() if listing else None

    async def set_availability(self, book_id: str, available: bool) -> None:
        listing = self.listings.get(book_id)
        if listing is None:
            logger.warning(f"Cannot toggle availability of unknown book {book_id}")
            return
        listing.is_available = available


class PostgresBookCatalog(BookCatalog):
    """
    Reads listings from the catalog's ``books`` table.

    Expected columns: id, lender_id, title, rental_fee, security_deposit,
    is_available.
    """

    def __init__(self, database: Database):
        self.db = database

    async def get_listing(self, book_id: str) -> Optional[BookListing]:
        try:
            async with self.db.require_pool().acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id::text AS book_id, lender_id::text AS lender_id, title, rental_fee,
                           security_deposit, is_available
                    FROM books WHERE id::text = $1
                    """,
                    book_id
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to load book {book_id}: {e}")
            raise DatabaseError(f"Failed to load book: {e}")
        return BookListing.model_validate(dict(row)) if row else None

    async def set_availability(self, book_id: str, available: bool) -> None:
        try:
            async with self.db.require_pool().acquire() as conn:
                await conn.execute(
                    "UPDATE books SET is_available = $1 WHERE id::text = $2",
                    available, book_id
                )
            logger.info(f"Book {book_id} availability set to {available}")
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to update availability for book {book_id}: {e}")
            raise DatabaseError(f"Failed to update book availability: {e}")
