import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017/chatapp")
DATABASE_NAME = os.getenv("DATABASE_NAME", "chatapp")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Messages returned per chat by the chat list endpoint
CHAT_HISTORY_WINDOW = int(os.getenv("CHAT_HISTORY_WINDOW", 50))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SEED_TEST_USERS = _env_bool("SEED_TEST_USERS")
