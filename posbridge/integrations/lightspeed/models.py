"""
Pydantic models for Lightspeed OAuth and R-Series API responses.
List endpoints return a bare object for one result and an array for several;
ensure_list() normalizes that at the deserialization boundary.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def ensure_list(data: Any) -> list[Any]:
    """Normalize a one-or-many API field into a list."""
    if data is None or data == "":
        return []
    if isinstance(data, list):
        return data
    return [data]


class LightspeedModel(BaseModel):
    """Base for API payloads; unknown fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TokenResponse(BaseModel):
    """Token endpoint response for authorization_code and refresh_token grants."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class TokenPair(BaseModel):
    """Decrypted tokens. In memory only, never persisted in this form."""

    access_token: str
    refresh_token: str
    expires_at: datetime


class RefreshedToken(BaseModel):
    access_token: str
    expires_at: datetime


class Account(LightspeedModel):
    account_id: str = Field(alias="accountID")
    name: Optional[str] = None


class Item(LightspeedModel):
    item_id: str = Field(alias="itemID")
    description: Optional[str] = None
    upc: Optional[str] = None
    ean: Optional[str] = None
    custom_sku: Optional[str] = Field(default=None, alias="customSku")
    manufacturer_sku: Optional[str] = Field(default=None, alias="manufacturerSku")
    category_id: Optional[str] = Field(default=None, alias="categoryID")
    manufacturer_id: Optional[str] = Field(default=None, alias="manufacturerID")
    archived: Optional[str] = None


class Category(LightspeedModel):
    category_id: str = Field(alias="categoryID")
    name: Optional[str] = None
    parent_id: Optional[str] = Field(default=None, alias="parentID")
    full_path_name: Optional[str] = Field(default=None, alias="fullPathName")


class Sale(LightspeedModel):
    sale_id: str = Field(alias="saleID")
    complete_time: Optional[str] = Field(default=None, alias="completeTime")
    completed: Optional[str] = None
    total: Optional[str] = None
    customer_id: Optional[str] = Field(default=None, alias="customerID")
    shop_id: Optional[str] = Field(default=None, alias="shopID")


class Customer(LightspeedModel):
    customer_id: str = Field(alias="customerID")
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")


class ItemShop(LightspeedModel):
    item_shop_id: str = Field(alias="itemShopID")
    item_id: Optional[str] = Field(default=None, alias="itemID")
    shop_id: Optional[str] = Field(default=None, alias="shopID")
    qoh: Optional[str] = None


class Shop(LightspeedModel):
    shop_id: str = Field(alias="shopID")
    name: Optional[str] = None
    archived: Optional[str] = None


class Register(LightspeedModel):
    register_id: str = Field(alias="registerID")
    name: Optional[str] = None
    shop_id: Optional[str] = Field(default=None, alias="shopID")


class Employee(LightspeedModel):
    employee_id: str = Field(alias="employeeID")
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")


class SyncOptions(BaseModel):
    products: bool = False
    orders: bool = False
    customers: bool = False
    inventory: bool = False


class SyncResult(BaseModel):
    shops: Optional[list[Shop]] = None
    products: Optional[list[Item]] = None
    inventory: Optional[list[ItemShop]] = None
    sales: Optional[list[Sale]] = None
    customers: Optional[list[Customer]] = None
    errors: dict[str, str] = {}

    @property
    def succeeded(self) -> list[str]:
        families = ("shops", "products", "inventory", "sales", "customers")
        return [name for name in families if getattr(self, name) is not None]
