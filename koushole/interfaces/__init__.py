"""
Interfaces module - Entry points into the pipeline.

This module provides:
1. CLI for processing books, batch runs and retrieval checks
2. HTTP API using FastAPI
"""
