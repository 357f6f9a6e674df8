from prometheus_client import Counter

observations_ingested = Counter(
    "observations_ingested_total", "Total station readings upserted into the base table."
)
ingest_failures = Counter(
    "ingest_failures_total", "Total ingestion cycles aborted with IngestFailure."
)
rollup_buckets_written = Counter(
    "rollup_buckets_written_total", "Total rollup buckets recomputed and upserted.", ["resolution"]
)
rollup_buckets_deleted = Counter(
    "rollup_buckets_deleted_total", "Total rollup buckets removed for having no samples.", ["resolution"]
)
range_queries = Counter(
    "range_queries_total", "Total range queries served, by source table.", ["source"]
)
query_failures = Counter("query_failures_total", "Total range queries failed.")
