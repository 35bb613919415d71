import os
import logging
from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Service role: the import writes across tables

supabase: Client | None = None

if not SUPABASE_URL:
    logger.warning("SUPABASE_URL not set. Imports will use the in-memory store.")
elif not SUPABASE_KEY:
    logger.warning("SUPABASE_SERVICE_ROLE_KEY not set. Imports will use the in-memory store.")
else:
    supabase = create_client(SUPABASE_URL, SUPABASE_KEY)


def get_supabase() -> Client | None:
    """Get the Supabase client instance."""
    return supabase
