"""
Utilities shared across the pipeline: errors, logging and retry.
"""
