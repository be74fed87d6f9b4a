import logging

from sqlalchemy import update

from errors import OutOfStock
from models import Book, db

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Sole writer of ``Book.available``.

    Both operations are single conditional UPDATEs issued inside the caller's
    transaction, so two concurrent borrowers can never both take the last
    copy and the counter stays within ``0 <= available <= quantity``.
    """

    def decrement(self, book_id):
        result = db.session.execute(
            update(Book)
            .where(Book.book_id == book_id, Book.available > 0)
            .values(available=Book.available - 1)
        )
        if result.rowcount != 1:
            logger.debug(f"Decrement refused, no copies left: book_id={book_id}")
            raise OutOfStock()
        logger.debug(f"Inventory decremented: book_id={book_id}")

    def increment(self, book_id):
        """Return a copy to the shelf. Returns False when already at quantity."""
        result = db.session.execute(
            update(Book)
            .where(Book.book_id == book_id, Book.available < Book.quantity)
            .values(available=Book.available + 1)
        )
        if result.rowcount != 1:
            logger.warning(f"Increment clamped at quantity: book_id={book_id}")
            return False
        logger.debug(f"Inventory incremented: book_id={book_id}")
        return True
