"""Thematic clustering of analyzed content by key-phrase TF-IDF vectors."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
from sklearn.cluster import KMeans
from sklearn.feature_extraction.text import TfidfVectorizer
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.config import ClusteringSettings, get_settings
from pulse.storage.models import SentimentAnalysis

logger = logging.getLogger(__name__)

TermWeights = list[tuple[str, float]]


@dataclass
class ClusteringReport:
    status: str  # "clustered" | "skipped" | "failed"
    documents: int = 0
    clusters: int = 0
    vocabulary_size: int = 0
    assignments: dict[uuid.UUID, int] = field(default_factory=dict)


def build_corpus(records: Sequence[SentimentAnalysis]) -> tuple[list[str], list[uuid.UUID]]:
    """Join each record's key phrases into a document.

    Records with no key phrases are left out, so ``doc_ids[i]`` (not ``i``)
    identifies the record behind ``documents[i]``.
    """
    documents: list[str] = []
    doc_ids: list[uuid.UUID] = []
    for record in records:
        phrases = [p for p in (record.key_phrases or []) if p and p.strip()]
        if not phrases:
            continue
        documents.append(" ".join(phrases))
        doc_ids.append(record.id)
    return documents, doc_ids


def term_weights(documents: list[str]) -> list[TermWeights]:
    """TF-IDF weights over the whole corpus, one descending term list per document."""
    vectorizer = TfidfVectorizer(lowercase=False, token_pattern=r"\S+")
    matrix = vectorizer.fit_transform(documents)
    terms = vectorizer.get_feature_names_out()

    listings: list[TermWeights] = []
    for row in range(matrix.shape[0]):
        start, end = matrix.indptr[row], matrix.indptr[row + 1]
        pairs = [(str(terms[col]), float(w)) for col, w in zip(matrix.indices[start:end], matrix.data[start:end])]
        pairs.sort(key=lambda pair: (-pair[1], pair[0]))
        listings.append(pairs)
    return listings


def build_vocabulary(listings: list[TermWeights]) -> list[str]:
    """Union of all documents' terms, in first-seen order."""
    vocabulary: list[str] = []
    seen: set[str] = set()
    for listing in listings:
        for term, _ in listing:
            if term not in seen:
                seen.add(term)
                vocabulary.append(term)
    return vocabulary


def build_vectors(listings: list[TermWeights], vocabulary: list[str]) -> np.ndarray:
    """One fixed-length row per document over the shared vocabulary, zero where absent."""
    index = {term: i for i, term in enumerate(vocabulary)}
    vectors = np.zeros((len(listings), len(vocabulary)), dtype=float)
    for row, listing in enumerate(listings):
        for term, weight in listing:
            col = index.get(term)
            if col is not None:
                vectors[row, col] = weight
    return vectors


def cluster_vectors(vectors: np.ndarray, max_clusters: int = 3, random_state: Optional[int] = None) -> list[int]:
    """K-means with k = min(max_clusters, number of documents)."""
    k = min(max_clusters, len(vectors))
    kmeans = KMeans(n_clusters=k, init="random", n_init=10, random_state=random_state)
    return [int(label) for label in kmeans.fit_predict(vectors)]


async def run_clustering(session: AsyncSession, settings: Optional[ClusteringSettings] = None) -> ClusteringReport:
    """Recompute clusters for every analysis row that has key phrases.

    Stateless: each run starts from scratch. Any failure aborts only this run.
    """
    settings = settings or get_settings().clustering
    logger.info("Performing clustering analysis...")

    try:
        result = await session.execute(select(SentimentAnalysis).order_by(SentimentAnalysis.created_at))
        records = list(result.scalars().all())

        documents, doc_ids = build_corpus(records)
        if len(documents) < settings.min_documents:
            logger.info(
                "Not enough meaningful documents for clustering (%d < %d)",
                len(documents),
                settings.min_documents,
            )
            return ClusteringReport(status="skipped", documents=len(documents))

        listings = term_weights(documents)
        vocabulary = build_vocabulary(listings)
        vectors = build_vectors(listings, vocabulary)
        labels = cluster_vectors(vectors, settings.max_clusters, settings.random_state)

        assignments = {doc_ids[i]: label for i, label in enumerate(labels)}
        for record_id, label in assignments.items():
            await session.execute(
                update(SentimentAnalysis)
                .where(SentimentAnalysis.id == record_id)
                .values(cluster_id=label)
            )
        await session.flush()

        n_clusters = len(set(labels))
        logger.info(
            "Clustering completed with %d clusters for %d documents (%d terms)",
            n_clusters,
            len(documents),
            len(vocabulary),
        )
        return ClusteringReport(
            status="clustered",
            documents=len(documents),
            clusters=n_clusters,
            vocabulary_size=len(vocabulary),
            assignments=assignments,
        )

    except Exception as e:
        logger.error("Clustering error: %s", e, exc_info=True)
        return ClusteringReport(status="failed")
