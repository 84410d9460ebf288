"""Catalog lookup used by the cart and checkout.

Stock changes go through conditional single-document updates so two buyers can
never both take the last unit.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, to_object_id
from errors import NotFound
from schemas import Product

logger = logging.getLogger(__name__)


def get_product(db: Database, product_id: str) -> Optional[dict]:
    """Resolve an active product, or ``None`` when it no longer exists."""
    if not product_id or not ObjectId.is_valid(str(product_id)):
        return None
    product = db["product"].find_one({"_id": ObjectId(str(product_id))})
    if not product or not product.get("is_active", True):
        return None
    return product


def require_product(db: Database, product_id: str) -> dict:
    product = get_product(db, product_id)
    if not product:
        raise NotFound("Product not found")
    return product


def primary_image(product: dict) -> Optional[str]:
    return (product.get("images") or [None])[0]


def decrement_stock_if_sufficient(db: Database, product_id: str, quantity: int) -> bool:
    result = db["product"].update_one(
        {"_id": ObjectId(str(product_id)), "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.utcnow()}},
    )
    return result.modified_count == 1


def restore_stock(db: Database, product_id: str, quantity: int) -> None:
    db["product"].update_one(
        {"_id": ObjectId(str(product_id))},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": datetime.utcnow()}},
    )


def create_product(db: Database, payload: Product) -> str:
    return create_document(db, "product", payload.model_dump())


def update_product(db: Database, product_id: str, changes: Dict[str, Any]) -> dict:
    allowed = set(Product.model_fields)
    changes = {k: v for k, v in changes.items() if k in allowed}
    changes["updated_at"] = datetime.utcnow()
    product = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id, "Product")},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFound("Product not found")
    logger.info("Product %s updated: %s", product_id, sorted(changes))
    return product
