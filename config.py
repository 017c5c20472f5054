import os

from dotenv import load_dotenv

load_dotenv()

BOT_TOKEN = os.getenv("BOT_TOKEN")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# sqlite / redis / memory
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "sqlite")
DB_FILE = os.getenv("DB_FILE", "db.sqlite3")
REDIS_URL = os.getenv("REDIS_URL")

# Ежедневная сводка по чатам
DIGEST_HOUR = int(os.getenv("DIGEST_HOUR", "21"))
DIGEST_MINUTE = int(os.getenv("DIGEST_MINUTE", "0"))
DIGEST_TIMEZONE = os.getenv("DIGEST_TIMEZONE", "UTC")

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
