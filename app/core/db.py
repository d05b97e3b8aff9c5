from tortoise import Tortoise, connections
from app.core.config import DB_URL
import logging
from logging import INFO

# Set logging level for Tortoise ORM
logging.getLogger('tortoise').setLevel(INFO)
log = logging.getLogger("db")

# Define all models modules for the ORM
MODELS_MODULES = [
    "app.models.outbox",
    "app.models.dead_letter",
    "app.models.checkpoint",
    "app.models.applied_event",
    "app.models.read_models",
]

async def init_db(db_url: str = DB_URL, generate_schemas: bool = True):
    """Initializes the Tortoise ORM connection and generates schemas."""
    try:
        # Timestamps drive leases, backoff and projection lag, so keep them timezone-aware
        await Tortoise.init(
            db_url=db_url,
            modules={"models": MODELS_MODULES},
            use_tz=True,
            timezone="UTC",
        )
        if generate_schemas:
            # Generate the database schema (create tables)
            await Tortoise.generate_schemas(safe=True)
        log.info("Database connection established and schemas generated.")
    except Exception as e:
        log.critical(f"FATAL ERROR: Could not connect to database. Error: {e}")
        # Re-raise to prevent the service from starting without a database
        raise

async def close_db():
    """Closes all database connections."""
    await connections.close_all()
    log.info("Database connections closed.")

async def ping_db() -> bool:
    """Round-trips a trivial query on the default connection."""
    await connections.get("default").execute_query("SELECT 1")
    return True
