from billwatch.core.database import BillwatchDB, get_db
from billwatch.core.settings import Settings, get_settings

__all__ = ["BillwatchDB", "get_db", "Settings", "get_settings"]
