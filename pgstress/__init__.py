"""pgstress: multi-profile Postgres load-generation harness."""

__version__ = "0.1.0"
