"""
civicdata_pipeline.sources — external data source adapters.

  CensusImportClient — census import endpoint (one POST per variable-year)
"""

from civicdata_pipeline.sources.census import CensusImportClient, FetchRequest, FetchResult

__all__ = ["CensusImportClient", "FetchRequest", "FetchResult"]
