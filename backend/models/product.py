from pydantic import BaseModel
from typing import Optional

from bson import ObjectId


class ProductSize(BaseModel):
    size: str
    price: int


class ProductSnapshot(BaseModel):
    """
    Catalog data frozen onto a sub-order at checkout.
    Later catalog edits never change what the customer paid for.
    """

    productId: str
    name: str
    price: int
    quantity: int
    size: Optional[ProductSize] = None
    image: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.price * self.quantity

    def to_document(self) -> dict:
        doc = self.model_dump()
        doc["productId"] = ObjectId(self.productId)
        return doc
