"""
RAG module - Retrieval-Augmented Generation.

This module is responsible for:
1. Retrieving the chunks of one book relevant to a question
2. Producing grounded tutor replies and quiz context from them
"""

from .retriever import Retriever, RetrievalResult
from .generator import TutorChat

__all__ = ["Retriever", "RetrievalResult", "TutorChat"]
