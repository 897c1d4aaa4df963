"""
civicdata_shared — shared settings, persistence client, constants and row models.

Usage:
    from civicdata_shared.config import settings
    from civicdata_shared.db import get_supabase_client
    from civicdata_shared.models import Statistic, StatRelation, AreaDataRow
    from civicdata_shared.constants import UNDEFINED_STAT_ATTRIBUTE, COLLECTION_STATS
"""

__version__ = "0.1.0"
