import uuid
from sqlalchemy.orm import Session

from app.core.auth import hash_api_key
from app.models.api_key import ApiKey
from app.models.business import Business, BUSINESS_STATUS_ACTIVE
from app.models.conversation import ConversationMessage, ConversationSession
from app.models.embedding import (
    CONTENT_TYPE_FAQ,
    CONTENT_TYPE_MENU_ITEM,
    CONTENT_TYPE_POLICY,
    Embedding,
)
from app.models.query_log import QueryLog
from app.models.usage import UsageAlert, UsageCounter
from app.schemas.pipeline import ContentItem

# Development keys; printed by seed_db.py so the API can be tried locally.
PIZZA_PALACE_API_KEY = "sk_test_pizza_palace_0001"
GLOW_SALON_API_KEY = "sk_test_glow_salon_0001"

PIZZA_PALACE_CONTENT = [
    ContentItem(
        content_type=CONTENT_TYPE_MENU_ITEM,
        content_id="margherita",
        title="Margherita Pizza",
        content="Margherita Pizza - fresh mozzarella, tomato sauce and basil on a wood-fired crust. $14.99",
        metadata={"price": 14.99, "category": "pizza"},
    ),
    ContentItem(
        content_type=CONTENT_TYPE_MENU_ITEM,
        content_id="pepperoni",
        title="Pepperoni Pizza",
        content="Pepperoni Pizza - house tomato sauce, mozzarella and crispy pepperoni. $16.99",
        metadata={"price": 16.99, "category": "pizza"},
    ),
    ContentItem(
        content_type=CONTENT_TYPE_MENU_ITEM,
        content_id="garden-salad",
        title="Garden Salad",
        content="Garden Salad - mixed greens, cherry tomatoes, cucumber. Vegan and gluten-free. $8.99",
        metadata={"price": 8.99, "category": "salad", "dietary": ["vegan", "gluten-free"]},
    ),
    ContentItem(
        content_type=CONTENT_TYPE_POLICY,
        content_id="delivery",
        title="Delivery Policy",
        content="We deliver within 5 miles. Free delivery on orders over $25, otherwise a $3.99 fee.",
    ),
    ContentItem(
        content_type=CONTENT_TYPE_FAQ,
        content_id="gluten-free-crust",
        title="Gluten-free crust",
        content="Yes, any pizza can be made on a gluten-free crust for an extra $2.",
    ),
]


def seed_db(db: Session) -> None:
    """Seed the database with sample businesses and API keys."""

    # Clear existing data (optional - comment out if you want to preserve data)
    db.query(UsageAlert).delete()
    db.query(UsageCounter).delete()
    db.query(QueryLog).delete()
    db.query(ConversationMessage).delete()
    db.query(ConversationSession).delete()
    db.query(Embedding).delete()
    db.query(ApiKey).delete()
    db.query(Business).delete()
    db.commit()

    # Create Businesses
    pizza_palace = Business(
        id=uuid.uuid4(),
        name="Pizza Palace",
        business_type="restaurant",
        category="pizza",
        description="Family-owned pizzeria serving wood-fired pizza since 1998.",
        phone="(555) 123-4567",
        email="hello@pizzapalace.example",
        website="https://pizzapalace.example",
        address="123 Main St, Springfield, IL 62701",
        city="Springfield",
        state="IL",
        zip_code="62701",
        timezone="America/Chicago",
        operating_hours="Mon-Sun 11am-10pm",
        status=BUSINESS_STATUS_ACTIVE,
        policies=["Free delivery on orders over $25", "Reservations for parties of 6 or more"],
        services=["dine-in", "takeout", "delivery"],
        products=["Margherita Pizza", "Pepperoni Pizza", "Garden Salad"],
        special_offers=["Two medium pizzas for $25 on Tuesdays"],
    )
    glow_salon = Business(
        id=uuid.uuid4(),
        name="Glow Hair Salon",
        business_type="salon",
        category="salon",
        description="Cuts, color and styling.",
        phone="(555) 987-6543",
        address="456 Oak Ave, Springfield, IL 62704",
        operating_hours="Tue-Sat 9am-7pm",
        status=BUSINESS_STATUS_ACTIVE,
        services=["haircut", "color", "blowout"],
    )
    db.add(pizza_palace)
    db.add(glow_salon)
    db.commit()
    db.refresh(pizza_palace)
    db.refresh(glow_salon)

    # Create API keys (only the hash is stored)
    db.add(ApiKey(
        business_id=pizza_palace.id,
        name="widget",
        key_hash=hash_api_key(PIZZA_PALACE_API_KEY),
        permissions=["query", "analytics:read", "usage:reset"],
    ))
    db.add(ApiKey(
        business_id=glow_salon.id,
        name="widget",
        key_hash=hash_api_key(GLOW_SALON_API_KEY),
        permissions=["query"],
    ))
    db.commit()
