"""
Runtime configuration.
Values come from the environment, optionally seeded from backend/.env.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'blood_exchange')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')
HOST = os.environ.get('HOST', '0.0.0.0')
PORT = int(os.environ.get('PORT', 8001))

# Claim coordinator
REQUEST_TTL_MINUTES = int(os.environ.get('REQUEST_TTL_MINUTES', 30))

# Exchange engine
EXCHANGE_WINDOW_DAYS = int(os.environ.get('EXCHANGE_WINDOW_DAYS', 15))
TRANSFER_MAX_ATTEMPTS = int(os.environ.get('TRANSFER_MAX_ATTEMPTS', 3))

# Obligation engine
OBLIGATION_TERM_DAYS = int(os.environ.get('OBLIGATION_TERM_DAYS', 30))
EXTENSION_DAYS = int(os.environ.get('EXTENSION_DAYS', 7))
MAX_EXTENSIONS = int(os.environ.get('MAX_EXTENSIONS', 3))
DEFAULT_DEPOSIT_AMOUNT = float(os.environ.get('DEFAULT_DEPOSIT_AMOUNT', 3000))
DEPOSIT_CURRENCY = os.environ.get('DEPOSIT_CURRENCY', 'INR')
