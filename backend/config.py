from dotenv import load_dotenv
from pathlib import Path
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration read from the environment (.env supported)"""

    def __init__(self):
        self.mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
        self.db_name = os.environ.get('DB_NAME', 'aid_ledger')

        self.jwt_secret_key = os.environ.get('JWT_SECRET_KEY', 'your-secret-key-change-in-production-2024')
        self.jwt_algorithm = os.environ.get('JWT_ALGORITHM', 'HS256')
        self.access_token_expire_minutes = int(os.environ.get('ACCESS_TOKEN_EXPIRE_MINUTES', '30'))

        # Multi-document writes run inside a MongoDB transaction (replica set required)
        self.mongo_transactions = _env_flag('MONGO_TRANSACTIONS', 'true')
        self.enforce_disbursement_ceiling = _env_flag('ENFORCE_DISBURSEMENT_CEILING', 'false')
        self.ensure_indexes_on_startup = _env_flag('ENSURE_INDEXES_ON_STARTUP', 'true')

        self.cors_origins = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
        self.log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()


settings = Settings()
