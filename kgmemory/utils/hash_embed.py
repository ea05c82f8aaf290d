"""
Deterministic local embedding provider.

Each lowercase word token is hashed into one of ``dimension`` buckets with a
hash-derived sign, and the resulting vector is L2-normalized. Texts sharing
words get positive cosine similarity, unrelated texts land near zero. Used
when no embedding service is configured and in tests.
"""

import hashlib
import math
import re
from typing import List

from .logging_config import get_logger

logger = get_logger(__name__)

TOKEN_PATTERN = re.compile(r'[a-z0-9]+')


class HashEmbed:
    """Feature-hashing embedder with the same surface as BedrockEmbed."""

    def __init__(self, dimension: int = 384):
        self.output_embedding_length = dimension
        logger.info(f'Initialized hash embedding provider ({dimension} dimensions)')

    def dimensions(self) -> int:
        return self.output_embedding_length

    def _embed(self, text: str) -> List[float]:
        vector = [0.0] * self.output_embedding_length
        for token in TOKEN_PATTERN.findall((text or '').lower()):
            digest = hashlib.sha1(token.encode('utf-8')).digest()
            bucket = int.from_bytes(digest[:4], 'big') % self.output_embedding_length
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    def embed_document(self, text: str) -> List[float]:
        return self._embed(text)

    def embed_query(self, text: str) -> List[float]:
        return self._embed(text)

    def ready(self) -> bool:
        return True

    def health_check(self) -> bool:
        return True
