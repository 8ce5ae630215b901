"""Builds the retrieval stack from ``Settings``."""

from typing import Optional

import structlog

from libs.caching.redis_client import get_redis_client
from libs.caching.retrieval_cache import RetrievalCache
from libs.common.settings import Settings, get_settings
from sitechat.bm25_provider import SparseIndex
from sitechat.chunker import Chunker
from sitechat.embeddings import EmbeddingProvider, OllamaEmbeddingProvider, OpenAIEmbeddingProvider
from sitechat.errors import ConfigurationError
from sitechat.fusion import FusionStrategy, ReciprocalRankFusion, WeightedScoreFusion
from sitechat.generator import AnswerGenerator, BotConfig, ChatService, OllamaAnswerGenerator
from sitechat.ingestion import IngestionPipeline
from sitechat.query_expansion import QueryExpander
from sitechat.retrieval_engine import HybridRetrievalEngine
from sitechat.vector_store import MilvusVectorStore

logger = structlog.get_logger(__name__)


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    if settings.embedding_provider == "ollama":
        return OllamaEmbeddingProvider(
            base_url=settings.ollama_url,
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
            timeout_seconds=settings.embedding_timeout_seconds,
            concurrency=settings.embedding_concurrency,
        )
    if settings.embedding_provider == "openai":
        if not settings.openai_api_key:
            raise ConfigurationError("SITECHAT_OPENAI_API_KEY is required for the openai embedding provider")
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.embedding_timeout_seconds,
            concurrency=settings.embedding_concurrency,
        )
    raise ConfigurationError(f"Unknown embedding provider: {settings.embedding_provider}")


def build_vector_store(settings: Settings) -> MilvusVectorStore:
    return MilvusVectorStore(
        uri=settings.milvus_uri,
        token=settings.milvus_token,
        collection_name=settings.milvus_collection,
        dimension=settings.embedding_dimension,
        timeout_seconds=settings.vector_timeout_seconds,
        batch_size=settings.vector_upsert_batch_size,
    )


def build_fusion_strategy(settings: Settings) -> FusionStrategy:
    if settings.fusion_strategy == "weighted":
        return WeightedScoreFusion(semantic_weight=settings.semantic_weight)
    if settings.fusion_strategy == "rrf":
        return ReciprocalRankFusion(k=settings.rrf_k)
    raise ConfigurationError(f"Unknown fusion strategy: {settings.fusion_strategy}")


def build_query_expander(settings: Settings) -> QueryExpander:
    if settings.query_expansion_rules_path:
        return QueryExpander.from_file(settings.query_expansion_rules_path)
    return QueryExpander()


def build_chunker(settings: Settings) -> Chunker:
    return Chunker(
        max_tokens=settings.chunk_max_tokens,
        overlap_tokens=settings.chunk_overlap_tokens,
        min_chunk_chars=settings.chunk_min_chars,
        heading_max_chars=settings.heading_max_chars,
    )


def load_sparse_index(settings: Settings) -> SparseIndex:
    """Load the persisted BM25 index; an absent file leaves an empty index."""
    index = SparseIndex(index_path=settings.bm25_index_path)
    if not index.load():
        logger.warning("BM25 index not available, hybrid search will run dense-only until ingestion")
    return index


async def build_engine(settings: Optional[Settings] = None) -> HybridRetrievalEngine:
    settings = settings or get_settings()
    redis_client = await get_redis_client(settings.redis_url)
    return HybridRetrievalEngine(
        embedding_provider=build_embedding_provider(settings),
        vector_store=build_vector_store(settings),
        sparse_index=load_sparse_index(settings),
        cache=RetrievalCache(redis_client, ttl_seconds=settings.cache_ttl_seconds),
        expander=build_query_expander(settings),
        fusion=build_fusion_strategy(settings),
        candidate_multiplier=settings.candidate_multiplier,
        allow_sparse_only_fallback=settings.allow_sparse_only_fallback,
    )


def build_ingestion_pipeline(settings: Settings, engine: HybridRetrievalEngine) -> IngestionPipeline:
    """Pipeline sharing the engine's embedder, vector store and sparse index."""
    return IngestionPipeline(
        chunker=build_chunker(settings),
        embedding_provider=engine.embedding_provider,
        vector_store=engine.vector_store,
        sparse_index=engine.sparse_index,
        min_page_chars=settings.min_page_chars,
    )


def build_answer_generator(settings: Settings) -> AnswerGenerator:
    return OllamaAnswerGenerator(
        base_url=settings.ollama_url,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout_seconds=settings.llm_timeout_seconds,
    )


def build_chat_service(settings: Settings, engine: HybridRetrievalEngine) -> ChatService:
    return ChatService(
        engine=engine,
        generator=build_answer_generator(settings),
        top_k=settings.default_top_k,
        similarity_threshold=settings.similarity_threshold,
        bot_config=BotConfig(site_name=settings.site_name),
    )
