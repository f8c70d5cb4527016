"""
Database Schemas for the Product Testing Marketplace

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: brands, testers and admins
- product: products listed for testing by a brand
- review: one tester's review of one product, with embedded comments
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["Brand", "Tester", "Admin"]
Gender = Literal["Male", "Female", "Other", "Not Specified"]
Status = Literal["live", "in-testing", "closed"]
Currency = Literal["USD", "EUR", "GBP", "INR", "JPY", "CAD", "AUD"]
Category = Literal[
    "web-app",
    "mobile-app",
    "saas",
    "design",
    "game",
    "ai",
    "productivity",
    "e-commerce",
    "Food",
    "Beverage",
    "Travel",
    "other",
]

URL_PATTERN = r"^(https?://)?(www\.)?[A-Za-z0-9]+([\-.][A-Za-z0-9]+)*\.[A-Za-z]{2,}(:[0-9]{1,5})?(/.*)?$"


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Role = Field("Tester")
    avatar: str = ""
    bio: Optional[str] = Field(None, max_length=500)
    age: Optional[int] = Field(None, ge=13, le=120)
    gender: Gender = "Not Specified"
    interests: List[str] = []


class Product(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    image: str = ""
    category: Category
    link: str = Field(..., pattern=URL_PATTERN)
    status: Status = "live"
    tags: List[str] = []
    maker: str = Field(..., description="Reference to user _id (Brand)")
    price: float = Field(..., ge=0)
    currency: Currency = "INR"
    avg_rating: float = Field(0, ge=0, le=5)
    total_ratings: int = Field(0, ge=0)
    inventory: int = Field(0, ge=0)
    manage_inventory: bool = True
    in_stock: bool = True


class Comment(BaseModel):
    id: str
    text: str = Field(..., min_length=1, max_length=500)
    user: str = Field(..., description="Reference to user _id")
    created_at: datetime


class Review(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    text: str = Field(..., min_length=1, max_length=1000)
    image: Optional[str] = None
    tester: str = Field(..., description="Reference to user _id (Tester)")
    product: str = Field(..., description="Reference to product _id")
    comments: List[Comment] = []
