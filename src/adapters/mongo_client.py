from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pymongo import ASCENDING, MongoClient


@dataclass
class MongoClientFactory:
    uri: str
    db_name: str
    _client: Optional[MongoClient] = field(default=None, init=False, repr=False)

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            self._client = MongoClient(self.uri, tz_aware=True)
        return self._client

    def get_collection(self, collection_name: str, *unique_keys: str):
        collection = self.client[self.db_name][collection_name]
        if unique_keys:
            collection.create_index([(key, ASCENDING) for key in unique_keys], unique=True)
        return collection

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
