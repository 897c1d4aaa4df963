"""
civicdata_pipeline — Statistics core for the civicdata platform.

Architecture:
  transforms/  — formula engine and the parent/child relationship graph
  loaders/     — document-store adapters, batched writes, summary upkeep
  sources/     — census import endpoint adapter
  pipelines/   — import-queue orchestration, derived stats, stat administration
  utils/       — structlog configuration, read retry, session checkpoint

Quick start:
    import asyncio
    from civicdata_pipeline.loaders.store import SupabaseStore
    from civicdata_pipeline.pipelines.stat_admin import StatAdmin

    orphaned = asyncio.run(StatAdmin(SupabaseStore()).cleanup_orphaned_relations())

CLI:
    civicdata import acs/acs5 B01001 B01001_001E --year 2023 --years 3
    civicdata status

Shared code from civicdata_shared:
    from civicdata_shared.config import settings
    from civicdata_shared.db import get_supabase_client
    from civicdata_shared.models import Statistic, StatRelation, AreaDataRow
"""

__version__ = "0.1.0"
