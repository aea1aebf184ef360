"""FastAPI application exposing studyrag services."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from studyrag.api.schemas import (
    CacheStatsResponse,
    CitationExtractRequest,
    CitationExtractResponse,
    CitationStreamRequest,
    CitationStatus,
    CitationValidateRequest,
    CitationValidateResponse,
    DocumentResponse,
    SearchRequest,
    SearchResponse,
    SearchResultModel,
    SummaryContentResponse,
    SynthesisRequest,
    TextIndexRequest,
    ToolCallRequest,
    ToolCallResponse,
)
from studyrag.cache.metadata import MetadataCache, run_periodic_cleanup
from studyrag.citations.parsing import (
    CitationStreamTracker,
    citation_label,
    citation_map_to_json,
    extract_citations_from_content,
    render_citations,
    sanitize_citation_map,
    validate_citations_against_documents,
)
from studyrag.citations.synthesis import OpenAISynthesizer, SynthesisBackend, TemplateSynthesizer
from studyrag.config import Settings, get_settings
from studyrag.embeddings.service import (
    EmbeddingBackend,
    EmbeddingConfig,
    EmbeddingService,
    HashEmbeddingBackend,
    LangChainEmbeddingBackend,
    VoyageEmbeddingBackend,
)
from studyrag.embeddings.store import ChromaChunkStore, ChunkStore, InMemoryChunkStore
from studyrag.errors import (
    AccessDeniedError,
    DocumentNotFoundError,
    EmbeddingUnavailableError,
    InvalidQueryError,
    ScopeError,
)
from studyrag.ingestion.chunking import ChunkingOptions
from studyrag.ingestion.service import DocumentIndexer, InvalidationPolicy
from studyrag.metrics.observability import (
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
)
from studyrag.models import SearchResult, SearchScope
from studyrag.retrieval.orchestrator import MultiQueryRetriever, OrchestratorConfig, StudySummaryRetriever
from studyrag.retrieval.scope import ScopeResolver
from studyrag.retrieval.service import SearchConfig, VectorSearchEngine
from studyrag.services.synthesis import ResearchSynthesizer
from studyrag.services.tools import SearchTools, ToolConfig
from studyrag.streaming.events import ErrorEvent, EventStream, to_sse


@dataclass(frozen=True)
class AppDependencies:
    store: ChunkStore
    cache: MetadataCache
    resolver: ScopeResolver
    engine: VectorSearchEngine
    tools: SearchTools
    summary: StudySummaryRetriever
    synthesizer: ResearchSynthesizer
    indexer: DocumentIndexer


def _build_embedding_backend(settings: Settings, config: EmbeddingConfig) -> EmbeddingBackend:
    if settings.embedding_backend == "voyage":
        return VoyageEmbeddingBackend(
            settings.voyage_api_key or "",
            model=settings.voyage_model,
            base_url=settings.voyage_base_url,
            timeout_seconds=settings.voyage_timeout_seconds,
            batch_size=settings.embedding_batch_size,
        )
    if settings.embedding_backend == "huggingface":
        return LangChainEmbeddingBackend(config)
    return HashEmbeddingBackend(config)


def _build_store(settings: Settings) -> ChunkStore:
    if not settings.chroma_enabled:
        return InMemoryChunkStore()
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    return ChromaChunkStore(
        collection_name=settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )


def _build_synthesis_backend(settings: Settings) -> SynthesisBackend:
    if settings.synthesis_backend == "openai":
        return OpenAISynthesizer(
            api_key=settings.openai_api_key,
            model=settings.synthesis_model,
            temperature=settings.synthesis_temperature,
            max_tokens=settings.synthesis_max_tokens,
        )
    return TemplateSynthesizer()


def build_dependencies(settings: Settings, *, store: ChunkStore | None = None, embeddings: EmbeddingService | None = None) -> AppDependencies:
    embedding_config = EmbeddingConfig(
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        use_model=settings.embedding_backend == "huggingface",
        normalize=True,
        max_retries=settings.embedding_max_retries,
        retry_delay_seconds=settings.embedding_retry_delay_seconds,
        batch_size=settings.embedding_batch_size,
    )
    if embeddings is None:
        embeddings = EmbeddingService(_build_embedding_backend(settings, embedding_config), embedding_config)
    store = store or _build_store(settings)
    cache = MetadataCache(
        max_entries=settings.cache_max_entries,
        default_ttl=settings.cache_default_ttl_seconds,
        eviction=settings.cache_eviction,
    )
    resolver = ScopeResolver(store, cache, metadata_ttl=settings.cache_study_metadata_ttl_seconds)
    engine = VectorSearchEngine(
        store,
        embeddings,
        resolver=resolver,
        config=SearchConfig(default_limit=settings.search_default_limit, min_similarity=settings.search_min_similarity),
    )
    orchestrator_config = OrchestratorConfig(
        max_per_document=settings.orchestrator_max_per_document,
        final_limit=settings.orchestrator_final_limit,
    )
    tools = SearchTools(
        engine,
        resolver,
        ToolConfig(
            default_limit=settings.search_tool_default_limit,
            max_limit=settings.search_max_limit,
            min_similarity=settings.search_min_similarity,
        ),
    )
    synthesizer = ResearchSynthesizer(
        MultiQueryRetriever(engine, orchestrator_config),
        backend=_build_synthesis_backend(settings),
        resolver=resolver,
        limit_per_query=settings.orchestrator_limit_per_query,
        min_similarity=settings.search_min_similarity,
    )
    indexer = DocumentIndexer(
        store,
        embeddings,
        cache,
        chunking=ChunkingOptions(
            chunk_size=settings.chunk_size,
            overlap_size=settings.chunk_overlap,
            min_chunk_size=settings.chunk_min_size,
            preserve_paragraphs=settings.chunk_preserve_paragraphs,
        ),
        invalidation=InvalidationPolicy(
            attempts=settings.cache_invalidation_attempts,
            base_delay_seconds=settings.cache_invalidation_base_delay_seconds,
        ),
    )
    return AppDependencies(
        store=store,
        cache=cache,
        resolver=resolver,
        engine=engine,
        tools=tools,
        summary=StudySummaryRetriever(engine, min_similarity=settings.search_min_similarity, config=orchestrator_config),
        synthesizer=synthesizer,
        indexer=indexer,
    )


def _to_model(result: SearchResult) -> SearchResultModel:
    return SearchResultModel(
        chunk_id=result.chunk_id,
        document_id=result.document_id,
        document_name=result.document_name,
        content=result.content,
        similarity=result.similarity,
        chunk_index=result.chunk_index,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cleanup = asyncio.create_task(run_periodic_cleanup(deps.cache, settings.cache_cleanup_interval_seconds))
        try:
            yield
        finally:
            cleanup.cancel()

    app = FastAPI(title="studyrag API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    class RateLimiter:
        def __init__(self, requests: int, window_seconds: float) -> None:
            self.requests = requests
            self.window = window_seconds
            self._buckets: dict[str, list[float]] = {}

        def __call__(self, request: Request) -> None:
            if self.requests <= 0:
                return
            caller = request.headers.get("X-User-ID") or request.headers.get("x-forwarded-for", "").split(",")[0].strip()
            if not caller:
                caller = request.client.host if request.client else "anonymous"
            key = f"{caller}:{request.url.path}"
            now = time.monotonic()
            bucket = self._buckets.setdefault(key, [])
            cutoff = now - self.window
            while bucket and bucket[0] <= cutoff:
                bucket.pop(0)
            if len(bucket) >= self.requests:
                logger.warning("api.rate_limited", key=key, limit=self.requests)
                raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
            bucket.append(now)

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    def current_user(request: Request) -> str:
        user_id = (request.headers.get("X-User-ID") or "").strip()
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
        return user_id

    def _error(request: Request, status_code: int, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    def _event_stream_response(
        request: Request,
        events: EventStream,
        producer: Callable[[], Awaitable[None]],
        label: str,
    ) -> StreamingResponse:
        async def iter_sse() -> AsyncIterator[str]:
            task = asyncio.create_task(producer())
            try:
                yield ": heartbeat\n\n"
                async for event in events:
                    if await request.is_disconnected():
                        logger.info("stream.client_disconnected", stream=label)
                        break
                    yield to_sse(event)
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(
            iter_sse(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.exception_handler(InvalidQueryError)
    async def handle_invalid_query(request: Request, exc: InvalidQueryError) -> JSONResponse:
        return _error(request, status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(ScopeError)
    async def handle_scope_error(request: Request, exc: ScopeError) -> JSONResponse:
        return _error(request, status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(AccessDeniedError)
    async def handle_access_denied(request: Request, exc: AccessDeniedError) -> JSONResponse:
        logger.warning("access.denied", document_ids=list(exc.document_ids))
        return _error(request, status.HTTP_403_FORBIDDEN, str(exc))

    @app.exception_handler(DocumentNotFoundError)
    async def handle_not_found(request: Request, exc: DocumentNotFoundError) -> JSONResponse:
        return _error(request, status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(EmbeddingUnavailableError)
    async def handle_embedding_unavailable(request: Request, exc: EmbeddingUnavailableError) -> JSONResponse:
        logger.error("embedding.unavailable", attempts=exc.attempts, detail=str(exc))
        return _error(request, status.HTTP_503_SERVICE_UNAVAILABLE, "Embedding service unavailable")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    @app.post(
        "/studies/{study_id}/documents/text",
        response_model=DocumentResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def index_text(
        study_id: str,
        payload: TextIndexRequest,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> DocumentResponse:
        scope = SearchScope(user_id=user_id, study_id=study_id)
        record = await dep.indexer.index_text(scope, payload.document_name, payload.text, document_id=payload.document_id)
        return DocumentResponse(
            document_id=record.document_id,
            name=record.name,
            status=record.status,
            chunk_count=record.chunk_count,
        )

    @app.get("/studies/{study_id}/documents", response_model=list[DocumentResponse])
    async def list_documents(
        study_id: str,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> list[DocumentResponse]:
        records = await dep.resolver.study_documents(SearchScope(user_id=user_id, study_id=study_id))
        return [
            DocumentResponse(document_id=r.document_id, name=r.name, status=r.status, chunk_count=r.chunk_count)
            for r in records
        ]

    @app.delete("/studies/{study_id}/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(
        study_id: str,
        document_id: str,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        await dep.indexer.delete_document(SearchScope(user_id=user_id, study_id=study_id), document_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/studies/{study_id}/search", response_model=SearchResponse)
    async def search(
        study_id: str,
        payload: SearchRequest,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> SearchResponse:
        scope = SearchScope(user_id=user_id, study_id=study_id)
        if payload.document_ids:
            result = await dep.tools.search_specific_documents(
                payload.query,
                scope,
                payload.document_ids,
                limit=payload.limit,
                min_similarity=payload.min_similarity,
            )
        else:
            result = await dep.tools.search_all_documents(
                payload.query,
                scope,
                limit=payload.limit,
                min_similarity=payload.min_similarity,
            )
        return SearchResponse(
            results=[_to_model(item) for item in result.results],
            total_found=result.total_found,
            search_scope=result.search_scope,
            document_names=result.document_names,
        )

    @app.post("/studies/{study_id}/tools/{tool_name}", response_model=ToolCallResponse)
    async def call_tool(
        study_id: str,
        tool_name: str,
        payload: ToolCallRequest,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ToolCallResponse:
        scope = SearchScope(user_id=user_id, study_id=study_id)
        output = await dep.tools.execute(tool_name, payload.arguments, scope)
        return ToolCallResponse(tool_name=tool_name, output=output)

    @app.get("/studies/{study_id}/summary-content", response_model=SummaryContentResponse)
    async def summary_content(
        study_id: str,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> SummaryContentResponse:
        content = await dep.summary.representative_content(SearchScope(user_id=user_id, study_id=study_id))
        return SummaryContentResponse(
            formatted_content=content.formatted_content,
            total_chunks=content.total_chunks,
            document_count=content.document_count,
            context_queries=content.context_queries,
            detail_queries=content.detail_queries,
        )

    @app.post("/studies/{study_id}/synthesis")
    async def synthesize(
        study_id: str,
        payload: SynthesisRequest,
        request: Request,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> StreamingResponse:
        scope = SearchScope(user_id=user_id, study_id=study_id)
        events = EventStream()

        async def run() -> None:
            try:
                await dep.synthesizer.synthesize(
                    payload.research_question,
                    payload.search_queries,
                    scope,
                    document_ids=payload.document_ids,
                    events=events,
                )
            except Exception as exc:
                await events.emit(ErrorEvent(message=str(exc)))
            finally:
                await events.close()

        return _event_stream_response(request, events, run, "synthesis")

    async def _cited_results(
        payload: CitationExtractRequest, scope: SearchScope, dep: AppDependencies
    ) -> list[SearchResult]:
        results = [
            SearchResult(
                chunk_id=item.chunk_id,
                document_id=item.document_id,
                document_name=item.document_name,
                content=item.content,
                similarity=item.similarity,
                chunk_index=item.chunk_index,
            )
            for item in payload.results
        ]
        if payload.tool_calls:
            results.extend(await dep.tools.rerun_tool_searches(payload.tool_calls, scope))
        return results

    @app.post("/studies/{study_id}/citations/extract", response_model=CitationExtractResponse)
    async def extract_citations(
        study_id: str,
        payload: CitationExtractRequest,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> CitationExtractResponse:
        scope = SearchScope(user_id=user_id, study_id=study_id)
        results = await _cited_results(payload, scope, dep)
        citation_map = extract_citations_from_content(payload.content, results)
        return CitationExtractResponse(
            citations=citation_map_to_json(citation_map),
            rendered=render_citations(payload.content, citation_map),
        )

    @app.post("/studies/{study_id}/citations/stream")
    async def stream_citations(
        study_id: str,
        payload: CitationStreamRequest,
        request: Request,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> StreamingResponse:
        """Replay a finished response as text deltas, each preceded by the citations it completes."""

        scope = SearchScope(user_id=user_id, study_id=study_id)
        results = await _cited_results(payload, scope, dep)
        tracker = CitationStreamTracker({result.document_name: result.document_id for result in results})
        events = EventStream()

        async def run() -> None:
            try:
                content = payload.content
                for start in range(0, len(content), payload.delta_size):
                    await events.emit_text(content[start : start + payload.delta_size], tracker)
            except Exception as exc:
                await events.emit(ErrorEvent(message=str(exc)))
            finally:
                await events.close()

        return _event_stream_response(request, events, run, "citations")

    @app.post("/studies/{study_id}/citations/validate", response_model=CitationValidateResponse)
    async def validate_citations(
        study_id: str,
        payload: CitationValidateRequest,
        user_id: str = Depends(current_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> CitationValidateResponse:
        citation_map = sanitize_citation_map(payload.citations)
        records = await dep.resolver.study_documents(SearchScope(user_id=user_id, study_id=study_id))
        validations = validate_citations_against_documents(citation_map, (r.document_id for r in records))
        return CitationValidateResponse(
            results={
                key: CitationStatus(
                    is_valid=validation.is_valid,
                    document_exists=validation.document_exists,
                    label=citation_label(citation_map[key], validation),
                    error=validation.error,
                )
                for key, validation in validations.items()
            },
            dropped=len(payload.citations) - len(citation_map),
        )

    @app.get("/cache/stats", response_model=CacheStatsResponse)
    async def cache_stats(dep: AppDependencies = Depends(get_dependencies)) -> CacheStatsResponse:
        stats = dep.cache.stats()
        return CacheStatsResponse(
            hits=stats.hits,
            misses=stats.misses,
            evictions=stats.evictions,
            expired=stats.expired,
            size=stats.size,
            hit_rate=stats.hit_rate,
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from studyrag import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    return app


app = create_app()
