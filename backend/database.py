from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from config.env import MONGO_URI
from utils.store import DocumentStore

load_dotenv()

_client = None
_store = None


def get_db():
    global _client
    if _client is None:
        if not MONGO_URI:
            raise RuntimeError("MONGODB_URI not set")
        _client = AsyncIOMotorClient(MONGO_URI)
    return _client.get_default_database()


def get_store() -> DocumentStore:
    global _store
    if _store is None:
        _store = DocumentStore(get_db())
    return _store
