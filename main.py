import logging
import os
import re
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import OperationFailure
from starlette.exceptions import HTTPException as StarletteHTTPException

import payments
import search
import webhooks
from auth import get_current_user, require_admin, require_crafter
from database import create_document, ensure_object_id, get_db, serialize_doc, utcnow
from schemas import Category, Crafter, DeliveryAddress, DeliveryOption, PaymentStatus, Product, ProductCategory

from dotenv import load_dotenv
load_dotenv()


def configure_logging() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


configure_logging()
logger = structlog.get_logger(__name__)

# FastAPI app
app = FastAPI(title="Crafters Marketplace API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error envelopes
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"success": False, "error": jsonable_errors(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


# Request models
class CrafterSetup(BaseModel):
    business_name: str = Field(..., max_length=100)
    bio: str = Field(..., max_length=1000)
    specialty: str = Field(..., max_length=200)
    location: str = Field(..., max_length=100)
    phone: Optional[str] = None


class CrafterUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=1000)
    specialty: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = None
    profile_image: Optional[str] = None


class ProductCreate(BaseModel):
    name: str = Field(..., max_length=200)
    price: float = Field(..., ge=0)
    category: ProductCategory
    description: str = Field(..., max_length=2000)
    materials: str
    dimensions: Optional[str] = None
    in_stock: bool = True
    featured: bool = False
    images: List[str] = []


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[ProductCategory] = None
    description: Optional[str] = Field(None, max_length=2000)
    materials: Optional[str] = None
    dimensions: Optional[str] = None
    in_stock: Optional[bool] = None
    featured: Optional[bool] = None
    images: Optional[List[str]] = None


class SemanticSearchRequest(BaseModel):
    query: Optional[str] = None
    limit: int = Field(20, ge=1, le=100)
    category: Optional[str] = None
    crafter_id: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    sort_by: Optional[str] = None


class CartLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class DeliveryChoice(BaseModel):
    method: Optional[DeliveryOption] = None
    address: Optional[DeliveryAddress] = None


class PaymentIntentRequest(BaseModel):
    items: Optional[List[CartLine]] = None
    delivery: Optional[DeliveryChoice] = None
    customer_email: Optional[EmailStr] = None
    customer_name: Optional[str] = None


class PaymentConfirmation(BaseModel):
    payment_intent: Optional[str] = None
    redirect_status: Optional[str] = None


# Helpers
def crafter_summary(crafter: dict) -> dict:
    return {
        "id": str(crafter["_id"]),
        "name": crafter.get("name"),
        "specialty": crafter.get("specialty"),
        "location": crafter.get("location"),
    }


def verified_crafters(db: Database) -> Dict[str, dict]:
    return {str(c["_id"]): c for c in db["crafter"].find({"verified": True})}


def with_crafter(product: dict, crafter: dict) -> dict:
    doc = serialize_doc(product)
    doc["crafter"] = crafter_summary(crafter)
    return doc


def own_crafter(user: dict, db: Database) -> dict:
    if not user.get("crafter_id"):
        raise HTTPException(status_code=404, detail="No crafter profile found")
    crafter = db["crafter"].find_one({"_id": ensure_object_id(user["crafter_id"])})
    if not crafter:
        raise HTTPException(status_code=404, detail="Crafter profile not found")
    return crafter


# Users
@app.get("/api/users/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": serialize_doc(current_user)}


# Categories
@app.get("/api/categories")
def get_categories(db: Database = Depends(get_db)):
    cats = db["category"].find({"is_active": True}).sort([("display_order", 1), ("name", 1)])
    return {"success": True, "data": [serialize_doc(c) for c in cats]}


# Crafters
@app.get("/api/crafters")
def list_crafters(db: Database = Depends(get_db)):
    crafters = [serialize_doc(c) for c in db["crafter"].find({"verified": True}).sort([("name", 1)])]
    return {"success": True, "count": len(crafters), "data": crafters}


@app.post("/api/crafters/setup")
def setup_crafter(body: CrafterSetup, user: dict = Depends(require_crafter), db: Database = Depends(get_db)):
    if user.get("crafter_id"):
        raise HTTPException(status_code=400, detail="Crafter profile already exists")
    crafter = Crafter(
        name=body.business_name,
        bio=body.bio,
        specialty=body.specialty,
        location=body.location,
        phone=body.phone,
        email=user.get("email"),
        user_id=str(user["_id"]),
        verified=False,
    )
    crafter_id = create_document(db, "crafter", crafter)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"crafter_id": crafter_id, "updated_at": utcnow()}})
    logger.info("crafter_profile_created", crafter_id=crafter_id, clerk_id=user.get("clerk_id"))
    return {"success": True, "crafter": {"id": crafter_id, "name": crafter.name, "verified": False}}


@app.get("/api/crafters/me")
def get_my_crafter(user: dict = Depends(require_crafter), db: Database = Depends(get_db)):
    return {"success": True, "crafter": serialize_doc(own_crafter(user, db))}


@app.put("/api/crafters/me")
def update_my_crafter(body: CrafterUpdate, user: dict = Depends(require_crafter), db: Database = Depends(get_db)):
    crafter = own_crafter(user, db)
    update = body.model_dump(exclude_none=True)
    if not update:
        return {"success": True, "crafter": serialize_doc(crafter)}
    update["updated_at"] = utcnow()
    crafter = db["crafter"].find_one_and_update(
        {"_id": crafter["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if "name" in update:
        db["product"].update_many({"crafter_id": str(crafter["_id"])}, {"$set": {"crafter_name": update["name"]}})
    return {"success": True, "crafter": serialize_doc(crafter)}


@app.get("/api/crafters/{crafter_id}")
def get_crafter(crafter_id: str, db: Database = Depends(get_db)):
    crafter = db["crafter"].find_one({"_id": ensure_object_id(crafter_id), "verified": True})
    if not crafter:
        raise HTTPException(status_code=404, detail="Crafter not found")
    products = db["product"].find({"crafter_id": crafter_id}, {"embedding": 0}).sort([("created_at", -1)])
    data = serialize_doc(crafter)
    data["products"] = [serialize_doc(p) for p in products]
    return {"success": True, "data": data}


# Products
@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    featured: Optional[bool] = None,
    q: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: str = "newest",
    db: Database = Depends(get_db),
):
    crafters = verified_crafters(db)
    query: Dict[str, Any] = {"crafter_id": {"$in": list(crafters)}}
    if category and category != "all":
        query["category"] = category
    if featured:
        query["featured"] = True
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"materials": {"$regex": pattern, "$options": "i"}},
        ]
    price: Dict[str, float] = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        query["price"] = price

    sort_spec = search.SORT_SPECS.get(sort, search.SORT_SPECS["newest"])
    cursor = db["product"].find(query, {"embedding": 0}).sort(sort_spec)
    items = [with_crafter(p, crafters[p["crafter_id"]]) for p in cursor]
    return {"success": True, "count": len(items), "data": items}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": ensure_object_id(product_id)}, {"embedding": 0})
    crafter = None
    if product and product.get("crafter_id"):
        crafter = db["crafter"].find_one({"_id": ensure_object_id(product["crafter_id"]), "verified": True})
    if not product or not crafter:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": with_crafter(product, crafter)}


@app.post("/api/products", status_code=status.HTTP_201_CREATED)
def create_product(body: ProductCreate, user: dict = Depends(require_crafter), db: Database = Depends(get_db)):
    crafter = own_crafter(user, db)
    product = Product(crafter_id=str(crafter["_id"]), crafter_name=crafter["name"], **body.model_dump())
    product_id = create_document(db, "product", product)
    db["crafter"].update_one({"_id": crafter["_id"]}, {"$inc": {"products_count": 1}})
    logger.info("product_created", product_id=product_id, crafter_id=str(crafter["_id"]))
    doc = db["product"].find_one({"_id": ensure_object_id(product_id)})
    return {"success": True, "data": serialize_doc(doc)}


def editable_product(product_id: str, user: dict, db: Database) -> dict:
    product = db["product"].find_one({"_id": ensure_object_id(product_id)}, {"embedding": 0})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if user.get("role") != "admin" and product.get("crafter_id") != user.get("crafter_id"):
        raise HTTPException(status_code=403, detail="Forbidden - not your product")
    return product


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, user: dict = Depends(require_crafter), db: Database = Depends(get_db)):
    product = editable_product(product_id, user, db)
    update = body.model_dump(mode="json", exclude_none=True)
    if not update:
        raise HTTPException(status_code=400, detail="No updates provided")
    update["updated_at"] = utcnow()
    # text changed, so the stored vector is stale
    unset = {"embedding": ""} if {"name", "description", "materials", "category"} & set(update) else {}
    changes: Dict[str, Any] = {"$set": update}
    if unset:
        changes["$unset"] = unset
    product = db["product"].find_one_and_update(
        {"_id": product["_id"]}, changes, projection={"embedding": 0}, return_document=ReturnDocument.AFTER
    )
    return {"success": True, "data": serialize_doc(product)}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(require_crafter), db: Database = Depends(get_db)):
    product = editable_product(product_id, user, db)
    db["product"].delete_one({"_id": product["_id"]})
    if product.get("crafter_id"):
        db["crafter"].update_one(
            {"_id": ensure_object_id(product["crafter_id"]), "products_count": {"$gt": 0}},
            {"$inc": {"products_count": -1}},
        )
    return {"success": True}


# Semantic search
@app.post("/api/search/semantic")
def semantic_search(body: SemanticSearchRequest, db: Database = Depends(get_db)):
    if not body.query or not body.query.strip():
        raise HTTPException(status_code=400, detail="Query is required")
    try:
        results = search.semantic_search(
            db,
            body.query,
            limit=body.limit,
            category=body.category,
            crafter_id=body.crafter_id,
            min_price=body.min_price,
            max_price=body.max_price,
            sort_by=body.sort_by,
        )
    except OperationFailure as exc:
        if search.is_missing_index_error(exc):
            logger.error("vector_index_missing", error=str(exc))
            raise HTTPException(
                status_code=503,
                detail="Vector search index not configured. Please set up Atlas Vector Search index.",
            )
        raise
    data = [serialize_doc(r) for r in results]
    return {"success": True, "query": body.query, "count": len(data), "data": data}


# Embeddings
@app.post("/api/embeddings/generate")
def generate_embeddings(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    result = search.generate_missing_embeddings(db)
    if result["total"] == 0:
        return {"success": True, "message": "All products already have embeddings", **result}
    return {"success": True, "message": f"Generated {result['success_count']} embeddings successfully", **result}


@app.get("/api/embeddings/generate")
def embeddings_status(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"success": True, **search.embedding_status(db)}


# Checkout
@app.post("/api/stripe/create-payment-intent")
def create_payment_intent(body: PaymentIntentRequest, db: Database = Depends(get_db)):
    if not body.items:
        raise HTTPException(status_code=400, detail="Cart items are required")
    if not body.delivery or not body.delivery.method:
        raise HTTPException(status_code=400, detail="Delivery information is required")
    if not body.customer_email or not body.customer_name:
        raise HTTPException(status_code=400, detail="Customer information is required")
    if body.delivery.method != DeliveryOption.pickup and not body.delivery.address:
        raise HTTPException(status_code=400, detail="Delivery address is required")

    result = payments.create_checkout(
        db,
        items=[i.model_dump() for i in body.items],
        delivery_method=body.delivery.method.value,
        delivery_address=body.delivery.address.model_dump() if body.delivery.address else None,
        customer_email=str(body.customer_email),
        customer_name=body.customer_name,
    )
    return {"success": True, **result}


# Orders
@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, db: Database = Depends(get_db)):
    order = db["order"].find_one({"_id": ensure_object_id(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "data": serialize_doc(order)}


@app.post("/api/orders/{order_id}/confirm")
def confirm_order(order_id: str, body: PaymentConfirmation, db: Database = Depends(get_db)):
    order = db["order"].find_one({"_id": ensure_object_id(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    order = payments.confirm_order_payment(db, order, body.payment_intent, body.redirect_status)
    return {"success": True, "data": serialize_doc(order)}


# Admin
@app.get("/api/admin/crafters/pending")
def pending_crafters(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    crafters = db["crafter"].find({"verified": False}).sort([("created_at", -1)])
    return {"success": True, "crafters": [serialize_doc(c) for c in crafters]}


@app.post("/api/admin/crafters/{crafter_id}/approve")
def approve_crafter(crafter_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    crafter = db["crafter"].find_one_and_update(
        {"_id": ensure_object_id(crafter_id)},
        {"$set": {"verified": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not crafter:
        raise HTTPException(status_code=404, detail="Crafter not found")
    logger.info("crafter_approved", crafter_id=crafter_id, admin=admin.get("clerk_id"))
    return {"success": True, "crafter": {"id": crafter_id, "name": crafter["name"], "verified": True}}


@app.post("/api/admin/crafters/{crafter_id}/reject")
def reject_crafter(crafter_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    crafter = db["crafter"].find_one_and_delete({"_id": ensure_object_id(crafter_id)})
    if not crafter:
        raise HTTPException(status_code=404, detail="Crafter not found")
    removed = db["product"].delete_many({"crafter_id": crafter_id}).deleted_count
    db["user"].update_many({"crafter_id": crafter_id}, {"$unset": {"crafter_id": ""}})
    logger.info("crafter_rejected", crafter_id=crafter_id, products_removed=removed, admin=admin.get("clerk_id"))
    return {"success": True, "message": "Crafter application rejected"}


@app.post("/api/admin/orders/cleanup")
def cleanup_orders(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    result = db["order"].delete_many({
        "payment_status": PaymentStatus.pending.value,
        "$or": [{"payment_intent_id": {"$exists": False}}, {"payment_intent_id": None}],
    })
    logger.info("pending_orders_cleaned", deleted=result.deleted_count)
    return {"success": True, "deleted": result.deleted_count}


# Webhooks
@app.post("/api/webhooks/clerk")
async def clerk_webhook(request: Request, db: Database = Depends(get_db)):
    body = await request.body()
    event = webhooks.verify_clerk_event(body, request.headers)
    webhooks.handle_clerk_event(db, event)
    return {"success": True}


# Health + test
@app.get("/")
def root():
    return {"message": "Crafters Marketplace API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "collections": []
    }
    try:
        response["collections"] = get_db().list_collection_names()[:10]
    except Exception as e:
        response["error"] = str(e)[:120]
    return response


INITIAL_CATEGORIES = [
    {"name": "Jewelry", "slug": "jewelry", "description": "Handcrafted necklaces, bracelets, earrings, and rings", "icon": "💍", "display_order": 1},
    {"name": "Pottery", "slug": "pottery", "description": "Ceramic mugs, bowls, plates, and decorative items", "icon": "🏺", "display_order": 2},
    {"name": "Textiles", "slug": "textiles", "description": "Knitted scarves, blankets, bags, and clothing", "icon": "🧶", "display_order": 3},
    {"name": "Woodwork", "slug": "woodwork", "description": "Wooden bowls, furniture, toys, and decorative pieces", "icon": "🪵", "display_order": 4},
    {"name": "Art", "slug": "art", "description": "Paintings, prints, illustrations, and mixed media", "icon": "🎨", "display_order": 5},
    {"name": "Other", "slug": "other", "description": "Leather goods, candles, soaps, and more unique items", "icon": "✨", "display_order": 6},
]


@app.get('/seed/init')
def seed(db: Database = Depends(get_db)):
    created = 0
    for c in INITIAL_CATEGORIES:
        if not db['category'].find_one({'slug': c['slug']}):
            create_document(db, 'category', Category(**c))
            created += 1
    return {'ok': True, 'created': created}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
