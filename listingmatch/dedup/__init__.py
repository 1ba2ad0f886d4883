"""Multi-signal duplicate detection for property listings.

Three signals score every candidate pair:
  Lexical:  edit-distance ratios on normalized fields plus numeric proximity.
  Semantic: cosine similarity of text embeddings, cached per record.
  Visual:   Hamming similarity of difference-hash image fingerprints.

The aggregator combines them with a WeightProfile into a confidence and a
unique / potential / duplicate classification; the orchestrator in
``listingmatch.dedup.pipeline`` drives incremental and full-corpus scans.
"""
