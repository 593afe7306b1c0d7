import asyncio
import os
import sys

from sqlalchemy import select

from storefront.infra.sql import create_schema, make_async_engine
from storefront.model.db import (
    Base, Category, DeliveryOption, Product, Variant,
)

# Catalog
CATEGORIES = [
    Category(slug="dresses", name="Dresses", sort_order=1),
    Category(slug="tops", name="Tops", sort_order=2),
    Category(slug="accessories", name="Accessories", sort_order=3),
]

PRODUCTS = [
    ("Adire Maxi Dress", "dresses", 45_000, 30, 27, 24,
     [("Indigo", "S", 5), ("Indigo", "M", 8), ("Indigo", "L", 4)], 0.8),
    ("Ankara Wrap Top", "tops", 18_000, 12, 11, 10,
     [("Red", "M", 10), ("Green", "M", 10)], 0.3),
    ("Beaded Clutch", "accessories", 25_000, 17, 15, 13,
     [("", "", 6)], 0.4),
]

DELIVERY_OPTIONS = [
    DeliveryOption(name="Lagos pickup", provider="store",
                   pricing_mode="FIXED", base_fee=0, base_currency="NGN"),
    DeliveryOption(name="Shipbubble courier", provider="shipbubble",
                   pricing_mode="EXTERNAL"),
]


async def seed(database_url: str):
    engine, SessionAsync, _, _ = make_async_engine(database_url)
    await create_schema(engine, Base.metadata)

    async with SessionAsync() as db:
        if (await db.execute(select(Category.slug).limit(1))).first():
            print('catalog already seeded, nothing to do')
            await engine.dispose()
            return

        db.add_all(CATEGORIES)
        for name, cat, ngn, usd, eur, gbp, variants, weight in PRODUCTS:
            db.add(Product(
                name=name,
                category_slug=cat,
                price_ngn=ngn, price_usd=usd, price_eur=eur, price_gbp=gbp,
                status="Published",
                variants=[
                    Variant(color=c, size=s, stock=n, weight=weight)
                    for c, s, n in variants
                ],
            ))
        db.add_all(DELIVERY_OPTIONS)
        await db.commit()

    await engine.dispose()
    print('✅ catalog seeded')


if __name__ == '__main__':
    url = os.getenv("DATABASE_URL")
    if not url:
        sys.exit("NEED DATABASE_URL!")
    asyncio.run(seed(url))
