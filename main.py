import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from bson import ObjectId

import config
import database
from catalog import (
    add_comment,
    apply_inventory_rules,
    create_review,
    decrement_inventory,
    delete_product_cascade,
    delete_review,
    remove_comment,
    update_review,
)
from database import attach_users, create_document, ensure_indexes, now, sanitize
from insights import build_insights
from integrations import build_chat_messages, chat_completion, upload_image
from schemas import Category, Currency, Gender, Status, URL_PATTERN
from schemas import Product as ProductSchema, User as UserSchema

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError as e:
            logger.warning("Could not ensure indexes: %s", e)
    yield


# App and CORS
app = FastAPI(title="Product Testing Marketplace API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.CLIENT_ORIGIN],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    expose_headers=["Authorization"],
)

# Auth setup
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/users/login")

# -----------------
# Error envelope
# -----------------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e["loc"] if p != "body"), "message": e["msg"]}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"success": False, "message": "Server error"}
    if config.DEBUG:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)

# -----------------
# Helpers
# -----------------

def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def public_user(doc: Dict) -> Dict:
    d = sanitize(doc)
    d.pop("password_hash", None)
    return d


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(user: Dict, expires_delta: Optional[timedelta] = None) -> str:
    if not config.JWT_SECRET:
        raise HTTPException(status_code=500, detail="Token signing is not configured")
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.JWT_EXPIRE_MINUTES))
    to_encode = {"sub": str(user.get("_id", user.get("id"))), "role": user["role"], "exp": expire}
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def auth_response(user: Dict) -> Dict[str, Any]:
    return {
        "success": True,
        "token": create_access_token(user),
        "user": {
            "id": str(user["_id"]),
            "name": user["name"],
            "email": user["email"],
            "role": user["role"],
            "avatar": user.get("avatar", ""),
        },
    }


async def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)):
    credentials_exception = HTTPException(status_code=401, detail="Not authorized to access this resource")
    if not config.JWT_SECRET:
        raise HTTPException(status_code=500, detail="Token signing is not configured")
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None or not ObjectId.is_valid(user_id):
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User no longer exists")
    return public_user(user)


def require_role(*roles: str):
    async def role_dep(current_user=Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"User role {current_user.get('role')} is not authorized to access this resource",
            )
        return current_user
    return role_dep


def ensure_owner_or_admin(current_user: Dict, owner_id: Optional[str], action: str) -> None:
    if owner_id != current_user["id"] and current_user.get("role") != "Admin":
        raise HTTPException(status_code=403, detail=f"Not authorized to {action}")


def get_product_or_404(db, product_id: str) -> Dict:
    product = db["product"].find_one({"_id": to_obj_id(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def get_review_or_404(db, review_id: str) -> Dict:
    review = db["review"].find_one({"_id": to_obj_id(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


def review_out(db, doc: Dict) -> Dict:
    r = sanitize(doc)
    attach_users(db, [r], "tester", ["name", "avatar"])
    r["comments"] = attach_users(db, [dict(c) for c in r.get("comments", [])], "user", ["name", "avatar", "role"])
    return r


def attach_products(db, reviews: List[Dict], fields: List[str]) -> List[Dict]:
    """Replace each review's product id with a product summary, dropping reviews of deleted products."""
    ids = [ObjectId(r["product"]) for r in reviews if ObjectId.is_valid(r.get("product"))]
    projection = {f: 1 for f in fields}
    products = {str(p["_id"]): sanitize(p) for p in db["product"].find({"_id": {"$in": ids}}, projection)} if ids else {}
    out = []
    for r in reviews:
        p = products.get(r["product"])
        if p:
            out.append({**r, "product": p})
    return out


def sort_spec(sort: Optional[str]) -> List[tuple]:
    spec = []
    for part in (sort or "-created_at").split(","):
        part = part.strip()
        if not part:
            continue
        direction = -1 if part.startswith("-") else 1
        field = part.lstrip("+-").strip()
        if not field:
            raise HTTPException(status_code=400, detail=f"Invalid sort field '{part}'")
        spec.append((field, direction))
    if not any(f == "_id" for f, _ in spec):
        spec.append(("_id", -1))
    return spec

# -----------------
# Request models
# -----------------

class Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterRequest(Payload):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: str = Field("Tester", pattern="^(Brand|Tester)$")


class LoginRequest(Payload):
    email: EmailStr
    password: str


class ProfileUpdateRequest(Payload):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    bio: Optional[str] = Field(None, max_length=500)
    avatar: Optional[str] = None
    age: Optional[int] = Field(None, ge=13, le=120)
    gender: Optional[Gender] = None
    interests: Optional[List[str]] = None


class UpdatePasswordRequest(Payload):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ProductCreateRequest(Payload):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    image: str = ""
    category: Category
    link: str = Field(..., pattern=URL_PATTERN)
    status: Status = "live"
    tags: List[str] = []
    price: float = Field(..., ge=0)
    currency: Currency = "INR"
    inventory: int = Field(0, ge=0)
    manage_inventory: bool = True
    in_stock: Optional[bool] = None


class ProductUpdateRequest(Payload):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    image: Optional[str] = None
    category: Optional[Category] = None
    link: Optional[str] = Field(None, pattern=URL_PATTERN)
    status: Optional[Status] = None
    tags: Optional[List[str]] = None
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[Currency] = None
    inventory: Optional[int] = Field(None, ge=0)
    manage_inventory: Optional[bool] = None
    in_stock: Optional[bool] = None


class InventoryRequest(Payload):
    quantity: int = Field(..., ge=1)


class ReviewCreateRequest(Payload):
    rating: int = Field(..., ge=1, le=5)
    text: str = Field(..., min_length=1, max_length=1000)
    image: Optional[str] = None


class ReviewUpdateRequest(Payload):
    rating: Optional[int] = Field(None, ge=1, le=5)
    text: Optional[str] = Field(None, min_length=1, max_length=1000)
    image: Optional[str] = None


class CommentRequest(Payload):
    text: str = Field(..., min_length=1, max_length=500)


class UploadRequest(Payload):
    image: str = Field(..., min_length=1)
    folder: Optional[str] = None


class ChatTurn(BaseModel):
    sender: str
    text: str


class ChatRequest(Payload):
    message: Optional[str] = None
    messages: List[ChatTurn] = []

# -----------------
# Service
# -----------------

@app.get("/")
def root():
    return {"success": True, "message": "Product Testing Marketplace API running"}


@app.get("/test")
def test_database():
    db = database.db
    try:
        collections = db.list_collection_names() if db is not None else []
        return {"backend": "ok", "database": "ok" if db is not None else "missing", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "database": f"error: {e}"}


@app.post("/init/bootstrap", status_code=201)
def bootstrap_admin(db=Depends(get_db)):
    """Create the first Admin from ADMIN_EMAIL / ADMIN_PASSWORD."""
    if db["user"].count_documents({"role": "Admin"}) > 0:
        raise HTTPException(status_code=400, detail="Admin already exists")
    if not config.ADMIN_PASSWORD:
        raise HTTPException(status_code=500, detail="ADMIN_PASSWORD is not configured")
    user = UserSchema(
        name="Administrator",
        email=config.ADMIN_EMAIL.lower(),
        password_hash=hash_password(config.ADMIN_PASSWORD),
        role="Admin",
    )
    create_document(db, "user", user)
    return {"success": True, "data": {"email": user.email}}

# -----------------
# Users
# -----------------

@app.post("/users/register", status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")
    user = UserSchema(name=payload.name, email=email, password_hash=hash_password(payload.password), role=payload.role)
    try:
        doc = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists")
    logger.info("Registered %s user %s", doc["role"], doc["_id"])
    return auth_response(doc)


@app.post("/users/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return auth_response(user)


@app.get("/users/me")
def me(current_user=Depends(get_current_user)):
    return {"success": True, "data": current_user}


@app.get("/users/profile")
def profile(current_user=Depends(get_current_user)):
    return {"success": True, "data": current_user}


@app.put("/users/profile")
def update_profile(payload: ProfileUpdateRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    user = db["user"].find_one_and_update(
        {"_id": ObjectId(current_user["id"])},
        {"$set": {**changes, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "data": public_user(user)}


@app.put("/users/password")
def update_password(payload: UpdatePasswordRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    user = db["user"].find_one({"_id": ObjectId(current_user["id"])})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": now()}},
    )
    return {"success": True, "token": create_access_token(user)}


@app.get("/users/insights")
def user_insights(current_brand=Depends(require_role("Brand")), db=Depends(get_db)):
    products = list(db["product"].find({"maker": current_brand["id"]}))
    product_ids = [str(p["_id"]) for p in products]
    reviews = list(db["review"].find({"product": {"$in": product_ids}})) if products else []
    tester_ids = {to_obj_id(r["tester"]) for r in reviews}
    testers = (
        {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": list(tester_ids)}}, {"age": 1, "gender": 1, "interests": 1})}
        if tester_ids else {}
    )
    return {"success": True, "data": build_insights(products, reviews, testers)}

# -----------------
# Products
# -----------------

@app.get("/products")
def list_products(
    category: Optional[Category] = None,
    status: Optional[Status] = None,
    maker: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    select: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db=Depends(get_db),
):
    q: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        q["$or"] = [{"title": pattern}, {"description": pattern}, {"tags": pattern}]
    if category:
        q["category"] = category
    if status:
        q["status"] = status
    if maker:
        q["maker"] = maker
    price_filter = {}
    if min_price is not None:
        price_filter["$gte"] = min_price
    if max_price is not None:
        price_filter["$lte"] = max_price
    if price_filter:
        q["price"] = price_filter

    fields = [f.strip() for f in select.split(",") if f.strip()] if select else []
    projection = {f: 1 for f in fields} or None
    total = db["product"].count_documents(q)
    start = (page - 1) * limit
    cursor = db["product"].find(q, projection).sort(sort_spec(sort)).skip(start).limit(limit)
    products = [sanitize(p) for p in cursor]
    if not fields or "maker" in fields:
        attach_users(db, products, "maker", ["name", "avatar"])

    pagination: Dict[str, Any] = {}
    if start + limit < total:
        pagination["next"] = {"page": page + 1, "limit": limit}
    if start > 0:
        pagination["prev"] = {"page": page - 1, "limit": limit}
    return {"success": True, "count": len(products), "pagination": pagination, "total": total, "data": products}


@app.get("/products/user")
def my_products(current_user=Depends(get_current_user), db=Depends(get_db)):
    products = [sanitize(p) for p in db["product"].find({"maker": current_user["id"]}).sort(sort_spec(None))]
    attach_users(db, products, "maker", ["name", "avatar"])
    return {"success": True, "count": len(products), "data": products}


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    product = sanitize(get_product_or_404(db, product_id))
    attach_users(db, [product], "maker", ["name", "avatar", "bio"])
    reviews = [sanitize(r) for r in db["review"].find({"product": product["id"]}).sort(sort_spec(None))]
    product["reviews"] = attach_users(db, reviews, "tester", ["name", "avatar"])
    return {"success": True, "data": product}


@app.post("/products", status_code=201)
def create_product(payload: ProductCreateRequest, current_user=Depends(require_role("Brand", "Admin")), db=Depends(get_db)):
    fields = payload.model_dump(exclude_none=True)
    apply_inventory_rules(fields)
    product = ProductSchema(**fields, maker=current_user["id"])
    doc = create_document(db, "product", product)
    logger.info("Product %s created by %s", doc["_id"], current_user["id"])
    return {"success": True, "data": sanitize(doc)}


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdateRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    product = get_product_or_404(db, product_id)
    ensure_owner_or_admin(current_user, product.get("maker"), "update this product")
    changes = apply_inventory_rules(payload.model_dump(exclude_unset=True, exclude_none=True), product)
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {**changes, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": sanitize(updated)}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, current_user=Depends(get_current_user), db=Depends(get_db)):
    product = get_product_or_404(db, product_id)
    ensure_owner_or_admin(current_user, product.get("maker"), "delete this product")
    delete_product_cascade(db, product)
    return {"success": True, "data": {}}


def _take_inventory(db, product_id: str, quantity: int, current_user: Dict, checkout: bool) -> Dict[str, Any]:
    product = get_product_or_404(db, product_id)
    if not checkout:
        ensure_owner_or_admin(current_user, product.get("maker"), "update this product")
    updated = decrement_inventory(db, product, quantity)
    if updated is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": sanitize(updated)}


@app.put("/products/{product_id}/inventory")
def update_inventory(product_id: str, payload: InventoryRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    return _take_inventory(db, product_id, payload.quantity, current_user, checkout=False)


@app.put("/products/{product_id}/checkout")
def checkout_inventory(product_id: str, payload: InventoryRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    # Any authenticated buyer may reduce stock of a product they do not own
    return _take_inventory(db, product_id, payload.quantity, current_user, checkout=True)

# -----------------
# Reviews
# -----------------

@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str, db=Depends(get_db)):
    reviews = [sanitize(r) for r in db["review"].find({"product": product_id}).sort(sort_spec(None))]
    attach_users(db, reviews, "tester", ["name", "avatar"])
    return {"success": True, "count": len(reviews), "data": reviews}


@app.post("/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewCreateRequest, current_tester=Depends(require_role("Tester")), db=Depends(get_db)):
    product = get_product_or_404(db, product_id)
    doc = create_review(db, product, current_tester["id"], payload.model_dump(exclude_none=True))
    return {"success": True, "data": review_out(db, doc)}


@app.get("/reviews/me")
def my_reviews(current_user=Depends(get_current_user), db=Depends(get_db)):
    reviews = [sanitize(r) for r in db["review"].find({"tester": current_user["id"]}).sort(sort_spec(None))]
    reviews = attach_products(db, reviews, ["title", "image", "category", "status"])
    return {"success": True, "count": len(reviews), "data": reviews}


@app.get("/reviews/{review_id}")
def get_review(review_id: str, db=Depends(get_db)):
    review = review_out(db, get_review_or_404(db, review_id))
    found = attach_products(db, [review], ["title", "image"])
    review["product"] = found[0]["product"] if found else None
    return {"success": True, "data": review}


@app.put("/reviews/{review_id}")
def edit_review(review_id: str, payload: ReviewUpdateRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    review = get_review_or_404(db, review_id)
    ensure_owner_or_admin(current_user, review.get("tester"), "update this review")
    updated = update_review(db, review, payload.model_dump(exclude_unset=True, exclude_none=True))
    return {"success": True, "data": review_out(db, updated)}


@app.delete("/reviews/{review_id}")
def remove_review(review_id: str, current_user=Depends(get_current_user), db=Depends(get_db)):
    review = get_review_or_404(db, review_id)
    ensure_owner_or_admin(current_user, review.get("tester"), "delete this review")
    delete_review(db, review)
    return {"success": True, "data": {}}


@app.post("/reviews/{review_id}/comments")
def comment_on_review(review_id: str, payload: CommentRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    review = get_review_or_404(db, review_id)
    updated = add_comment(db, review, current_user["id"], payload.text)
    return {"success": True, "data": review_out(db, updated)}


@app.delete("/reviews/{review_id}/comments/{comment_id}")
def delete_comment(review_id: str, comment_id: str, current_user=Depends(get_current_user), db=Depends(get_db)):
    review = get_review_or_404(db, review_id)
    comment = next((c for c in review.get("comments", []) if c.get("id") == comment_id), None)
    if comment is None:
        raise HTTPException(status_code=404, detail="Comment not found")
    if current_user["id"] not in (comment.get("user"), review.get("tester")) and current_user.get("role") != "Admin":
        raise HTTPException(status_code=403, detail="Not authorized to delete this comment")
    updated = remove_comment(db, review, comment_id)
    return {"success": True, "data": review_out(db, updated)}

# -----------------
# Upload & chat proxies
# -----------------

@app.post("/upload")
async def upload(payload: UploadRequest, current_user=Depends(get_current_user)):
    result = await upload_image(payload.image, payload.folder or config.UPLOAD_FOLDER)
    return {"success": True, "data": result}


@app.post("/chat/message")
async def chat_message(payload: ChatRequest):
    if not payload.message and not payload.messages:
        raise HTTPException(status_code=400, detail="Message is required")
    history = [m.model_dump() for m in payload.messages]
    text = await chat_completion(build_chat_messages(payload.message, history))
    return {"success": True, "text": text, "sender": "agent"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
