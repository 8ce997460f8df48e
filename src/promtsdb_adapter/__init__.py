"""promtsdb_adapter - Prometheus remote-storage adapter for OpenTSDB.

Translates Prometheus label-matcher queries into OpenTSDB HTTP queries,
fans them out concurrently and merges the returned fragments back into
canonical time series. Also forwards sample batches to /api/put.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
