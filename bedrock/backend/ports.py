"""Bedrock — Port records (MongoDB)."""

import logging
import re
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId

from backend.exceptions import NetworkError
from backend.models import BoundingBox

logger = logging.getLogger("bedrock.ports")

# Oil-capable: oil berth depth recorded, fuel oil or diesel on offer,
# or a harbor typed as coastal/lake terminal
OIL_FACILITY_QUERY = {
    "$or": [
        {"oilDepth": {"$exists": True, "$ne": ""}},
        {"fuelOil": "Y"},
        {"diesel": "Y"},
        {"harborType": {"$in": ["LC", "LT"]}},
    ]
}


def _serialize(doc: dict) -> dict:
    out = dict(doc)
    if "_id" in out:
        out["_id"] = str(out["_id"])
    return out


class PortRepository:
    """Queries over the `ports` collection.

    Documents store `coordinates` as [lon, lat] with a 2dsphere index.
    """

    def __init__(
        self,
        uri: str = "mongodb://localhost:27017",
        database: str = "bedrock-terminal",
        collection: str = "ports",
        collection_obj=None,
    ):
        self._uri = uri
        self._database = database
        self._collection_name = collection
        self._client = None
        self._collection = collection_obj

    async def connect(self):
        if self._collection is not None:
            return
        try:
            from motor.motor_asyncio import AsyncIOMotorClient
            self._client = AsyncIOMotorClient(self._uri, serverSelectionTimeoutMS=5000)
            await self._client.admin.command("ping")
            self._collection = self._client[self._database][self._collection_name]
            logger.info("Connected to MongoDB (%s.%s)", self._database, self._collection_name)
        except Exception as e:
            logger.warning("MongoDB connection failed (%s) — port queries disabled", e)
            if self._client is not None:
                self._client.close()
            self._client = None

    @property
    def available(self) -> bool:
        return self._collection is not None

    def _require(self):
        if self._collection is None:
            raise NetworkError("Port database unavailable")
        return self._collection

    async def _find(self, query: dict, limit: int) -> list[dict]:
        cursor = self._require().find(query).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [_serialize(d) for d in docs]

    async def in_bounds(self, bounds: BoundingBox, limit: int = 1000) -> list[dict]:
        return await self._find(
            {
                "coordinates": {
                    "$geoWithin": {
                        "$box": [
                            [bounds.min_lon, bounds.min_lat],  # bottom left
                            [bounds.max_lon, bounds.max_lat],  # top right
                        ]
                    }
                }
            },
            limit,
        )

    async def by_country(self, country: str, limit: int = 1000) -> list[dict]:
        return await self._find({"country": {"$regex": re.escape(country), "$options": "i"}}, limit)

    async def search(self, text: str, limit: int = 50) -> list[dict]:
        return await self._find({"name": {"$regex": re.escape(text), "$options": "i"}}, limit)

    async def oil_facilities(self, limit: int = 1000) -> list[dict]:
        return await self._find(OIL_FACILITY_QUERY, limit)

    async def get(self, port_id: str) -> Optional[dict[str, Any]]:
        try:
            oid = ObjectId(port_id)
        except (InvalidId, TypeError):
            return None
        doc = await self._require().find_one({"_id": oid})
        return _serialize(doc) if doc else None

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None
