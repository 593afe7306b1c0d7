from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, StoreError
from ..helpers import to_iso
from .db import Category, DeliveryOption, Product, Variant

PRODUCT_STATUSES = ("Draft", "Published", "Archived")


def slugify(s: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (s or "").lower()).strip("-")


def _text_or_none(v: Any) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


# ----------------------------
# Categories
# ----------------------------
def serialize_category(c: Category) -> Dict[str, Any]:
    return {
        "slug": c.slug,
        "name": c.name,
        "description": c.description,
        "bannerImage": c.banner_image,
        "isActive": c.is_active,
        "sortOrder": c.sort_order,
        "createdAt": to_iso(c.created_at),
        "updatedAt": to_iso(c.updated_at),
    }


async def list_categories(db: AsyncSession,
                          active_only: bool = True) -> List[Dict[str, Any]]:
    stmt = select(Category).order_by(Category.sort_order, Category.name)
    if active_only:
        stmt = stmt.where(Category.is_active.is_(True))
    return [serialize_category(c)
            for c in (await db.execute(stmt)).scalars().all()]


async def create_category(db: AsyncSession,
                          body: Dict[str, Any]) -> Dict[str, Any]:
    name = str(body.get("name") or "").strip()
    slug = slugify(str(body.get("slug") or "") or name)
    if not name:
        raise StoreError("Name is required.")
    if not slug:
        raise StoreError("Slug is required.")
    try:
        sort_order = int(body.get("sortOrder") or 0)
    except (TypeError, ValueError):
        sort_order = 0

    db.add(Category(
        slug=slug,
        name=name,
        description=_text_or_none(body.get("description")),
        banner_image=_text_or_none(body.get("bannerImage")),
        is_active=bool(body.get("isActive", True)),
        sort_order=sort_order,
    ))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise StoreError("A category with this slug already exists.", 409)
    return {"slug": slug}


async def update_category(db: AsyncSession, slug: str,
                          body: Dict[str, Any]) -> Dict[str, Any]:
    c = await db.get(Category, slug)
    if c is None:
        raise NotFound("Not found")

    if isinstance(body.get("name"), str):
        c.name = body["name"].strip()
    new_slug = ""
    if isinstance(body.get("slug"), str):
        new_slug = slugify(body["slug"])
    if new_slug and new_slug != c.slug:
        if await db.get(Category, new_slug) is not None:
            await db.rollback()
            raise StoreError("Slug already exists.", 409)
        c.slug = new_slug
    if isinstance(body.get("description"), str):
        c.description = _text_or_none(body["description"])
    if isinstance(body.get("bannerImage"), str):
        c.banner_image = _text_or_none(body["bannerImage"])
    if isinstance(body.get("isActive"), bool):
        c.is_active = body["isActive"]
    if "sortOrder" in body:
        try:
            c.sort_order = int(body["sortOrder"])
        except (TypeError, ValueError):
            c.sort_order = 0
    try:
        await db.commit()
    except IntegrityError:
        # products follow the slug through ON UPDATE CASCADE
        await db.rollback()
        raise StoreError("Category update conflicts with existing products.",
                         409)
    return {"slug": c.slug}


async def delete_category(db: AsyncSession, slug: str) -> None:
    c = await db.get(Category, slug)
    if c is None:
        raise NotFound("Not found")
    in_use = (await db.execute(
        select(func.count()).select_from(Product)
        .where(Product.category_slug == slug)
    )).scalar_one()
    if in_use:
        raise StoreError(
            "Cannot delete category that is referenced by products. "
            "Move or delete products first.", 409,
        )
    await db.delete(c)
    await db.commit()


# ----------------------------
# Products
# ----------------------------
def serialize_variant(v: Variant) -> Dict[str, Any]:
    return {
        "id": v.id,
        "color": v.color,
        "size": v.size,
        "stock": v.stock,
        "weight": v.weight,
    }


def serialize_product(p: Product) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "images": p.images or [],
        "category": p.category_slug,
        "priceNGN": p.price_ngn,
        "priceUSD": p.price_usd,
        "priceEUR": p.price_eur,
        "priceGBP": p.price_gbp,
        "sizeMods": p.size_mods,
        "status": p.status,
        "createdAt": to_iso(p.created_at),
        "variants": [serialize_variant(v) for v in p.variants],
    }


async def list_products(db: AsyncSession, category: Optional[str] = None,
                        status: Optional[str] = "Published",
                        limit: int = 100) -> List[Dict[str, Any]]:
    stmt = select(Product).order_by(Product.created_at.desc())
    if category:
        stmt = stmt.where(Product.category_slug == category)
    if status:
        stmt = stmt.where(Product.status == status)
    stmt = stmt.limit(max(1, min(limit, 500)))
    return [serialize_product(p)
            for p in (await db.execute(stmt)).scalars().all()]


async def get_product(db: AsyncSession, product_id: str) -> Dict[str, Any]:
    p = await db.get(Product, product_id)
    if p is None:
        raise NotFound("Product not found")
    return serialize_product(p)


def _price(body: Dict[str, Any], key: str) -> Optional[float]:
    v = body.get(key)
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        raise StoreError(f"Invalid {key}")


async def create_product(db: AsyncSession,
                         body: Dict[str, Any]) -> Dict[str, Any]:
    name = str(body.get("name") or "").strip()
    category = str(body.get("category") or "")
    if not name:
        raise StoreError("Name is required.")
    if await db.get(Category, category) is None:
        raise StoreError("Unknown category")
    status = body.get("status") or "Draft"
    if status not in PRODUCT_STATUSES:
        raise StoreError("Invalid status")

    variants = []
    for v in body.get("variants") or []:
        try:
            stock = int(v.get("stock") or 0)
            weight = float(v["weight"]) if v.get("weight") is not None \
                else None
        except (TypeError, ValueError):
            raise StoreError("Invalid variant stock or weight")
        if stock < 0:
            raise StoreError("Stock cannot be negative")
        variants.append(Variant(
            color=str(v.get("color") or ""),
            size=str(v.get("size") or ""),
            stock=stock,
            weight=weight,
        ))

    product = Product(
        name=name,
        description=_text_or_none(body.get("description")),
        images=[str(i) for i in body.get("images") or []],
        category_slug=category,
        price_ngn=_price(body, "priceNGN"),
        price_usd=_price(body, "priceUSD"),
        price_eur=_price(body, "priceEUR"),
        price_gbp=_price(body, "priceGBP"),
        size_mods=bool(body.get("sizeMods")),
        status=status,
        variants=variants,
    )
    db.add(product)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise StoreError("Duplicate variant (color/size) for product", 409)
    return serialize_product(product)


# ----------------------------
# Delivery options
# ----------------------------
def serialize_delivery_option(d: DeliveryOption) -> Dict[str, Any]:
    return {
        "id": d.id,
        "name": d.name,
        "provider": d.provider,
        "pricingMode": d.pricing_mode,
        "baseFee": d.base_fee,
        "baseCurrency": d.base_currency,
        "active": d.active,
        "metadata": d.meta,
    }


async def list_delivery_options(
    db: AsyncSession, active_only: bool = True,
) -> List[Dict[str, Any]]:
    stmt = select(DeliveryOption).order_by(DeliveryOption.name)
    if active_only:
        stmt = stmt.where(DeliveryOption.active.is_(True))
    return [serialize_delivery_option(d)
            for d in (await db.execute(stmt)).scalars().all()]
