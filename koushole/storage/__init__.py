"""
Storage module - Documents, chapters and content blocks.
"""
