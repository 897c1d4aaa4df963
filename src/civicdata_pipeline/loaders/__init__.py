"""
civicdata_pipeline.loaders — Persistence side of the core.

  store      — StatStore contract, InMemoryStore, SupabaseStore
  batcher    — TransactionBatcher (bounded sequential atomic batches)
  summaries  — SummaryAggregator (stat_data_summaries upkeep)
"""
