"""Harvester: website ingestion pipeline for retrieval corpora."""
