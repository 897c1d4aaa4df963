"""
civicdata_pipeline.pipelines — Orchestrators that wire sources -> transforms -> loaders.

    from civicdata_pipeline.pipelines.import_queue import ImportQueueOrchestrator
    from civicdata_pipeline.pipelines.derived import DerivedStatBuilder
    from civicdata_pipeline.pipelines.stat_admin import StatAdmin
"""
