"""
civicdata_pipeline.transforms — Pure computation over stats and relations.

  formulas       — derived value maps and numeric summaries
  relationships  — RelationshipGraph: cycles, cascades, renames, inheritance
"""
