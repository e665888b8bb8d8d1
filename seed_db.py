"""
Script to seed the database with sample data.
Run with: python seed_db.py

When GEMINI_API_KEY is set, Pizza Palace's menu and policies are also embedded
so vector search has something to find.
"""
import asyncio

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import SessionLocal, init_db
from app.models.business import Business
from app.seed.seed_data import GLOW_SALON_API_KEY, PIZZA_PALACE_API_KEY, PIZZA_PALACE_CONTENT, seed_db
from app.services.analytics_dispatcher import AnalyticsOutbox
from app.services.content_indexer import business_info_item, index_business_content
from app.services.gemini_client import GeminiClient
from app.services.usage_tracker import UsageTracker

# Load environment variables
load_dotenv()


async def index_pizza_palace(db: Session) -> None:
    business = db.query(Business).filter(Business.name == "Pizza Palace").one()
    tracker = UsageTracker(settings)
    outbox = AnalyticsOutbox()
    items = [business_info_item(business), *PIZZA_PALACE_CONTENT]
    summary = await index_business_content(db, GeminiClient(settings), tracker, outbox, business, items)
    for event in outbox.drain():
        tracker.apply_usage_event(db, event.payload)
    print(f"Indexed {summary.indexed} items ({summary.failed} failed)")


def main():
    """Main function to seed the database."""
    print("Initializing database...")
    init_db()

    print("Seeding database...")
    db: Session = SessionLocal()
    try:
        seed_db(db)
        if settings.gemini_api_key:
            print("Embedding content...")
            asyncio.run(index_pizza_palace(db))
    finally:
        db.close()
    print(f"Pizza Palace API key: {PIZZA_PALACE_API_KEY}")
    print(f"Glow Hair Salon API key: {GLOW_SALON_API_KEY}")
    print("Done!")


if __name__ == "__main__":
    main()
