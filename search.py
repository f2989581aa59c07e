import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from openai import OpenAI
from pymongo.database import Database

logger = structlog.get_logger(__name__)

VECTOR_INDEX = "vector_index"
NUM_CANDIDATES = 100
INDEX_MISSING_CODE = 40324

# sort keys that keep the incoming order
ORDER_PRESERVING_SORTS = {None, "", "newest", "relevance"}

SORT_SPECS = {
    "newest": [("created_at", -1)],
    "price-asc": [("price", 1)],
    "price-desc": [("price", -1)],
    "name-asc": [("name", 1)],
}


@lru_cache(maxsize=1)
def _openai_client() -> OpenAI:
    return OpenAI(api_key=os.getenv("OPENAI_API_KEY"))


def generate_embedding(text: str) -> List[float]:
    model = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    response = _openai_client().embeddings.create(model=model, input=text)
    return response.data[0].embedding


def product_text(product: Dict[str, Any]) -> str:
    return (
        f"{product['name']}. {product['description']}. "
        f"Made from {product['materials']}. Category: {product['category']}."
    )


def generate_product_embedding(product: Dict[str, Any]) -> List[float]:
    return generate_embedding(product_text(product))


def build_vector_pipeline(query_vector: List[float], limit: int) -> List[Dict[str, Any]]:
    return [
        {
            "$vectorSearch": {
                "index": VECTOR_INDEX,
                "path": "embedding",
                "queryVector": query_vector,
                "numCandidates": NUM_CANDIDATES,
                "limit": limit,
            }
        },
        {"$addFields": {"crafter_oid": {"$toObjectId": "$crafter_id"}}},
        {
            "$lookup": {
                "from": "crafter",
                "localField": "crafter_oid",
                "foreignField": "_id",
                "as": "crafter_info",
            }
        },
        {"$unwind": {"path": "$crafter_info", "preserveNullAndEmptyArrays": False}},
        {"$match": {"crafter_info.verified": True}},
        {
            "$addFields": {
                "crafter": {
                    "id": {"$toString": "$crafter_info._id"},
                    "name": "$crafter_info.name",
                    "specialty": "$crafter_info.specialty",
                    "location": "$crafter_info.location",
                },
                "score": {"$meta": "vectorSearchScore"},
            }
        },
        {"$project": {"crafter_info": 0, "crafter_oid": 0, "embedding": 0}},
    ]


def vector_search(db: Database, query_vector: List[float], limit: int) -> List[Dict[str, Any]]:
    return list(db["product"].aggregate(build_vector_pipeline(query_vector, limit)))


def is_missing_index_error(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    return code == INDEX_MISSING_CODE or "vector" in str(exc).lower()


def apply_product_filters(
    products: List[Dict[str, Any]],
    category: Optional[str] = None,
    crafter_id: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
) -> List[Dict[str, Any]]:
    results = list(products)
    if category and category != "all":
        results = [p for p in results if p.get("category") == category]
    if crafter_id:
        results = [p for p in results if str(p.get("crafter_id")) == crafter_id]
    if min_price is not None:
        results = [p for p in results if p.get("price", 0) >= min_price]
    if max_price is not None:
        results = [p for p in results if p.get("price", 0) <= max_price]
    return results


def sort_products(products: List[Dict[str, Any]], sort_by: Optional[str] = None) -> List[Dict[str, Any]]:
    if sort_by in ORDER_PRESERVING_SORTS:
        return products
    if sort_by == "price-asc":
        return sorted(products, key=lambda p: p.get("price", 0))
    if sort_by == "price-desc":
        return sorted(products, key=lambda p: p.get("price", 0), reverse=True)
    if sort_by == "name-asc":
        return sorted(products, key=lambda p: p.get("name", "").lower())
    return products


def semantic_search(db: Database, query: str, limit: int = 20, **filters: Any) -> List[Dict[str, Any]]:
    """Embed ``query``, run the vector search, then filter and sort the hits."""
    sort_by = filters.pop("sort_by", None)
    logger.info("semantic_search", query=query, limit=limit)
    query_vector = generate_embedding(query)
    results = vector_search(db, query_vector, limit)
    logger.info("semantic_search_results", count=len(results))
    return sort_products(apply_product_filters(results, **filters), sort_by)


def generate_missing_embeddings(db: Database) -> Dict[str, int]:
    products = list(db["product"].find({"embedding": {"$exists": False}}))
    success_count = 0
    error_count = 0
    for product in products:
        try:
            embedding = generate_product_embedding(product)
        except Exception as exc:
            logger.error("embedding_failed", product=product.get("name"), error=str(exc))
            error_count += 1
            continue
        result = db["product"].update_one({"_id": product["_id"]}, {"$set": {"embedding": embedding}})
        if result.modified_count:
            success_count += 1
        else:
            logger.warning("embedding_not_saved", product=product.get("name"))
            error_count += 1
    logger.info("embeddings_generated", success=success_count, errors=error_count, total=len(products))
    return {"success_count": success_count, "error_count": error_count, "total": len(products)}


def embedding_status(db: Database) -> Dict[str, int]:
    total = db["product"].count_documents({})
    with_embeddings = db["product"].count_documents({"embedding": {"$exists": True, "$ne": None}})
    return {
        "total": total,
        "with_embeddings": with_embeddings,
        "without_embeddings": total - with_embeddings,
        "percent_complete": round(with_embeddings / total * 100) if total else 0,
    }
