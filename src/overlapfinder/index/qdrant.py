"""Qdrant-backed implementation of the vector index protocol."""

from __future__ import annotations

import logging
import uuid
from typing import List, Sequence

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client import models as qmodels

from overlapfinder.index.filters import (
    DOCUMENT_ID_FIELD,
    Eq,
    FilterNode,
    In,
    MatchNone,
    Ne,
    flatten,
)
from overlapfinder.index.vectors import VectorPoint
from overlapfinder.models import SearchHit

LOGGER = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000
_IMPOSSIBLE_VALUE = "__overlapfinder_match_none__"


def qdrant_point_id(point_id: str) -> str:
    """Qdrant only accepts unsigned ints or UUIDs as point ids."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"overlapfinder:{point_id}"))


def _match(values: Sequence[object]) -> qmodels.MatchValue | qmodels.MatchAny:
    if len(values) == 1:
        return qmodels.MatchValue(value=values[0])
    return qmodels.MatchAny(any=list(values))


def to_qdrant_filter(node: FilterNode | None) -> qmodels.Filter | None:
    must: List[qmodels.FieldCondition] = []
    must_not: List[qmodels.FieldCondition] = []
    for clause in flatten(node):
        if isinstance(clause, MatchNone):
            must.append(
                qmodels.FieldCondition(
                    key=DOCUMENT_ID_FIELD, match=qmodels.MatchValue(value=_IMPOSSIBLE_VALUE)
                )
            )
        elif isinstance(clause, Eq):
            must.append(qmodels.FieldCondition(key=clause.field, match=_match([clause.value])))
        elif isinstance(clause, Ne):
            must_not.append(
                qmodels.FieldCondition(key=clause.field, match=_match([clause.value]))
            )
        elif isinstance(clause, In):
            values = list(clause.values) or [_IMPOSSIBLE_VALUE]
            must.append(qmodels.FieldCondition(key=clause.field, match=_match(values)))

    if not must and not must_not:
        return None
    return qmodels.Filter(must=must or None, must_not=must_not or None)


class QdrantVectorIndex:
    """Thin wrapper around :class:`QdrantClient` speaking the pipeline's types."""

    def __init__(
        self,
        client: QdrantClient | None = None,
        *,
        url: str = "http://localhost:6333",
        collection: str = "documents",
        timeout: int = 10,
    ) -> None:
        self.client = client or QdrantClient(url=url, timeout=timeout)
        self.collection = collection

    def ensure_collection(self, dimension: int) -> None:
        if self.client.collection_exists(self.collection):
            return
        LOGGER.info("Creating Qdrant collection %s (dim=%s)", self.collection, dimension)
        self.client.create_collection(
            collection_name=self.collection,
            vectors_config=qmodels.VectorParams(size=dimension, distance=qmodels.Distance.COSINE),
        )
        self.client.create_payload_index(
            collection_name=self.collection,
            field_name=DOCUMENT_ID_FIELD,
            field_schema=qmodels.PayloadSchemaType.KEYWORD,
        )

    def search(
        self,
        vector: Sequence[float] | np.ndarray,
        *,
        limit: int,
        query_filter: FilterNode | None = None,
    ) -> List[SearchHit]:
        response = self.client.query_points(
            collection_name=self.collection,
            query=[float(value) for value in vector],
            limit=limit,
            query_filter=to_qdrant_filter(query_filter),
            with_payload=True,
            with_vectors=False,
        )
        hits: List[SearchHit] = []
        for point in response.points:
            payload = dict(point.payload or {})
            hits.append(
                SearchHit(
                    id=str(payload.get("point_id", point.id)),
                    score=float(point.score or 0.0),
                    payload=payload,
                )
            )
        return hits

    def upsert(self, points: Sequence[VectorPoint]) -> None:
        if not points:
            return
        self.ensure_collection(len(points[0].vector))
        self.client.upsert(
            collection_name=self.collection,
            points=[
                qmodels.PointStruct(
                    id=qdrant_point_id(point.id),
                    vector=np.asarray(point.vector, dtype="float32").tolist(),
                    payload={**point.payload, "point_id": point.id},
                )
                for point in points
            ],
            wait=True,
        )

    def delete_points(self, ids: Sequence[str]) -> None:
        ids = list(ids)
        batches = range(0, len(ids), DELETE_BATCH_SIZE)
        for batch_number, start in enumerate(batches, start=1):
            batch = ids[start : start + DELETE_BATCH_SIZE]
            self.client.delete(
                collection_name=self.collection,
                points_selector=qmodels.PointIdsList(
                    points=[qdrant_point_id(point_id) for point_id in batch]
                ),
                wait=True,
            )
            if len(batches) > 1:
                LOGGER.info(
                    "Deleted vector batch %s/%s (%s points)",
                    batch_number,
                    len(batches),
                    len(batch),
                )

    def delete_document(self, document_id: str) -> None:
        self.client.delete(
            collection_name=self.collection,
            points_selector=qmodels.FilterSelector(
                filter=qmodels.Filter(
                    must=[
                        qmodels.FieldCondition(
                            key=DOCUMENT_ID_FIELD,
                            match=qmodels.MatchValue(value=document_id),
                        )
                    ]
                )
            ),
            wait=True,
        )
