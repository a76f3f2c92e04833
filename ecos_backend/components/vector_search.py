import httpx
import logging
from typing import List, Optional

from ecos_backend import config

logger = logging.getLogger(__name__)


class VectorSearchClient:
    """
    Client for the retrieval service that holds the scenario reference material.

    Contract: POST {service_url}/retrieve {"query", "index", "top_k"}
    -> {"passages": [{"text": "..."}, ...]}.
    Any failure degrades to an empty list.
    """

    def __init__(self, service_url: Optional[str] = None, top_k: Optional[int] = None):
        self.service_url = (config.VECTOR_SEARCH_URL if service_url is None else service_url).rstrip("/")
        self.top_k = top_k or config.VECTOR_SEARCH_TOP_K
        self.timeout = config.VECTOR_SEARCH_TIMEOUT_SEC
        if self.service_url:
            logger.info(f"VectorSearchClient: Initialized with service URL: {self.service_url}")
        else:
            logger.info("VectorSearchClient: No service URL configured, retrieval disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.service_url)

    async def retrieve(self, query: str, index: Optional[str] = None) -> List[str]:
        """Return the text of the passages relevant to `query` (possibly empty)"""
        if not self.enabled or not query.strip():
            return []

        payload = {"query": query, "index": index, "top_k": self.top_k}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.service_url}/retrieve", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"VectorSearchClient: Could not retrieve context from index {index}: {e}")
            return []
        except ValueError as e:
            logger.warning(f"VectorSearchClient: Invalid JSON from retrieval service: {e}")
            return []

        passages = []
        for item in data.get("passages", []) if isinstance(data, dict) else []:
            text = item.get("text") if isinstance(item, dict) else item
            if isinstance(text, str) and text.strip():
                passages.append(text.strip())

        logger.info(f"VectorSearchClient: Retrieved {len(passages)} passages (index={index})")
        return passages
