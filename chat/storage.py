from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os

load_dotenv()

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://mongo:27017")
MONGODB_DATABASE = os.getenv("MONGODB_DATABASE", "bookshare_chat")
client: AsyncIOMotorClient = None


async def init_db():
    global client
    client = AsyncIOMotorClient(MONGODB_URL)
    await client[MONGODB_DATABASE].messages.create_index([("room_id", 1), ("created_at", 1)])


async def close_db_connection():
    global client
    if client:
        client.close()
        client = None


def get_database():
    return client[MONGODB_DATABASE]
