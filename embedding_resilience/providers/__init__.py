"""
Embedding provider abstraction and implementations.

Provides:
- Abstract EmbeddingProvider interface
- OpenAI direct implementation
- Azure OpenAI implementation
"""

from .azure_openai import AzureOpenAIEmbeddings
from .base import EmbeddingProvider
from .openai import OpenAIEmbeddings

__all__ = [
    "AzureOpenAIEmbeddings",
    "EmbeddingProvider",
    "OpenAIEmbeddings",
]
