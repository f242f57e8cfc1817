import asyncio
import logging
import math
import time
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

from . import agents
from .config import AppSettings
from .router import InferenceRouter
from .schemas import (
    ChatMessage,
    FactsPayload,
    LLMRequest,
    LLMResponse,
    PlanPayload,
    ResearchMetadata,
    ResearchRequest,
    ResearchResponse,
    ResearchTask,
    SourceInfo,
    Task,
    VerifiedFact,
)
from .sources import ScrapedPage, SearchHit, SourceProvider
from .structured import parse_structured_or_default

logger = logging.getLogger("uvicorn.error")

MAX_SUB_QUESTIONS = 5
VERIFY_SOURCE_CHARS = 2000
VERIFY_TOTAL_CHARS = 15000
SUMMARY_SOURCE_CHARS = 500
ROUTER_MAX_TOKENS = 4096


class ResearchFailed(Exception):
    pass


def source_domain(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def hit_to_source(hit: SearchHit) -> SourceInfo:
    score = 0.5 if hit.score is None else min(1.0, max(0.0, float(hit.score)))
    return SourceInfo(
        url=hit.url,
        title=hit.title,
        domain=source_domain(hit.url),
        extracted_content=hit.snippet,
        relevance_score=score,
        publish_date=hit.publish_date,
    )


def merge_sources(existing: Sequence[SourceInfo], incoming: Iterable[SourceInfo]) -> List[SourceInfo]:
    """Deduplicate by exact URL, keeping the higher-relevance entry, then order by relevance."""
    by_url: Dict[str, SourceInfo] = {}
    for source in [*existing, *incoming]:
        current = by_url.get(source.url)
        if current is None or source.relevance_score > current.relevance_score:
            by_url[source.url] = source
    return sorted(by_url.values(), key=lambda s: s.relevance_score, reverse=True)


def clean_sub_questions(questions: Iterable[str], query: str) -> List[str]:
    cleaned: List[str] = []
    for question in questions:
        text = question.strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned[:MAX_SUB_QUESTIONS] or [query]


def _batches(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    size = max(1, size)
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


class ResearchPipeline:
    """Plan, search, extract, verify and synthesize a cited research report."""

    def __init__(self, router: InferenceRouter, source_provider: SourceProvider, settings: AppSettings):
        self.router = router
        self.sources = source_provider
        self.settings = settings

    async def run(self, request: ResearchRequest) -> ResearchResponse:
        start = time.monotonic()
        task = ResearchTask(query=request.query.strip())
        prefer_local = self.settings.prefer_local_default if request.prefer_local is None else request.prefer_local
        max_sources = request.max_sources or self.settings.max_sources_default
        queries_executed = 0
        model_used: Optional[str] = None
        try:
            if not task.query:
                raise ResearchFailed("query is required")
            logger.info("Research: starting %r", task.query)
            await self.plan(task, prefer_local)
            queries_executed = await self.search(task, max_sources)
            await self.extract(task)
            if request.include_fact_verification and len(task.sources) >= 2:
                await self.verify(task, prefer_local)
            response = await self.synthesize(task, request.report_type, prefer_local)
            model_used = response.model_used
            task.advance("completed")
        except ResearchFailed as exc:
            task.advance("failed")
            logger.warning("Research: failed for %r: %s", task.query, exc)
            return self._failure(task, str(exc), start, queries_executed)
        except Exception as exc:
            task.advance("failed")
            logger.exception("Research: unexpected error for %r", task.query)
            return self._failure(task, f"Research failed: {exc}", start, queries_executed)
        logger.info(
            "Research: completed %r with %d sources and %d facts",
            task.query,
            len(task.sources),
            len(task.verified_facts),
        )
        return ResearchResponse(
            success=True,
            report=task.report,
            sources=task.sources,
            facts_verified=task.verified_facts,
            metadata=ResearchMetadata(
                total_sources=len(task.sources),
                execution_time_ms=int((time.monotonic() - start) * 1000),
                queries_executed=queries_executed,
                model_used=model_used,
                sub_questions=task.sub_questions,
                errors=task.errors,
            ),
        )

    def _failure(self, task: ResearchTask, error: str, start: float, queries_executed: int) -> ResearchResponse:
        return ResearchResponse(
            success=False,
            error=error,
            metadata=ResearchMetadata(
                total_sources=len(task.sources),
                execution_time_ms=int((time.monotonic() - start) * 1000),
                queries_executed=queries_executed,
                sub_questions=task.sub_questions,
                errors=task.errors,
            ),
        )

    async def _complete(
        self,
        system: str,
        user: str,
        task_tag: Task,
        prefer_local: bool,
        temperature: float = 0.7,
    ) -> LLMResponse:
        return await self.router.execute(
            LLMRequest(
                messages=[
                    ChatMessage(role="system", content=system),
                    ChatMessage(role="user", content=user),
                ],
                task=task_tag,
                prefer_local=prefer_local,
                max_tokens=ROUTER_MAX_TOKENS,
                temperature=temperature,
            )
        )

    async def plan(self, task: ResearchTask, prefer_local: bool) -> None:
        task.advance("planning")
        response = await self._complete(agents.PLANNER_SYSTEM, task.query, "planning", prefer_local, 0.2)
        if not response.success:
            task.errors.append(f"planning: {response.error}")
            task.sub_questions = [task.query]
            return
        plan = parse_structured_or_default(response.content, PlanPayload, PlanPayload(questions=[task.query]))
        task.sub_questions = clean_sub_questions(plan.questions, task.query)
        logger.info("Research: planned %d sub-questions via %s", len(task.sub_questions), response.model_used)

    async def _search_one(self, query: str, max_results: int) -> List[SearchHit]:
        return await asyncio.wait_for(
            self.sources.search(query, max_results),
            timeout=self.settings.search_timeout_s,
        )

    async def search(self, task: ResearchTask, max_sources: int) -> int:
        task.advance("searching")
        queries: List[str] = []
        for query in [task.query, *task.sub_questions]:
            if query not in queries:
                queries.append(query)
        per_query = max(1, math.ceil(max_sources / len(queries)))
        merged: List[SourceInfo] = []
        for batch in _batches(queries, self.settings.search_concurrency):
            results = await asyncio.gather(
                *(self._search_one(query, per_query) for query in batch),
                return_exceptions=True,
            )
            # Merge happens here, after the batch joined, never inside a worker.
            incoming: List[SourceInfo] = []
            for query, result in zip(batch, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    message = "timeout" if isinstance(result, asyncio.TimeoutError) else str(result)
                    logger.warning("Research: search failed for %r: %s", query, message)
                    task.errors.append(f"search {query!r}: {message}")
                    continue
                incoming.extend(hit_to_source(hit) for hit in result if hit.url)
            merged = merge_sources(merged, incoming)
        task.sources = merged[:max_sources]
        logger.info("Research: %d unique sources from %d queries", len(task.sources), len(queries))
        return len(queries)

    async def _scrape_one(self, url: str) -> ScrapedPage:
        return await asyncio.wait_for(self.sources.scrape(url), timeout=self.settings.scrape_timeout_s)

    async def extract(self, task: ResearchTask) -> None:
        task.advance("extracting")
        top_n = max(0, self.settings.extract_top_n)
        head, tail = task.sources[:top_n], task.sources[top_n:]
        results = await asyncio.gather(*(self._scrape_one(s.url) for s in head), return_exceptions=True)
        extracted: List[SourceInfo] = []
        for source, result in zip(head, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                message = "timeout" if isinstance(result, asyncio.TimeoutError) else str(result)
                logger.warning("Research: extraction failed for %s: %s", source.url, message)
                task.errors.append(f"scrape {source.url}: {message}")
                extracted.append(source)
                continue
            extracted.append(
                source.model_copy(
                    update={
                        "extracted_content": result.content or source.extracted_content,
                        "author": result.author or source.author,
                        "publish_date": result.publish_date or source.publish_date,
                    }
                )
            )
        task.sources = extracted + list(tail)

    async def verify(self, task: ResearchTask, prefer_local: bool) -> None:
        task.advance("verifying")
        combined = "\n\n---\n\n".join(
            f"Source: {s.domain}\n{s.extracted_content[:VERIFY_SOURCE_CHARS]}" for s in task.sources
        )
        response = await self._complete(
            agents.VERIFIER_SYSTEM, combined[:VERIFY_TOTAL_CHARS], "reasoning", prefer_local, 0.2
        )
        if not response.success:
            task.errors.append(f"verification: {response.error}")
            task.verified_facts = []
            return
        facts = parse_structured_or_default(response.content, FactsPayload, FactsPayload(facts=[]))
        task.verified_facts = list(facts.facts)
        logger.info("Research: verified %d facts", len(task.verified_facts))

    async def synthesize(self, task: ResearchTask, report_type: str, prefer_local: bool) -> LLMResponse:
        task.advance("synthesizing")
        response = await self._complete(
            agents.writer_system(report_type),
            build_report_prompt(task.query, task.sources, task.verified_facts, report_type),
            "synthesis",
            prefer_local,
        )
        if not response.success:
            raise ResearchFailed(response.error or "report synthesis failed")
        if not response.content.strip():
            raise ResearchFailed(f"report synthesis returned no content ({response.model_used})")
        task.report = response.content
        return response


def build_report_prompt(
    query: str,
    sources: Sequence[SourceInfo],
    facts: Sequence[VerifiedFact],
    report_type: str,
) -> str:
    sources_summary = "\n".join(
        f"[{idx}] {s.title} ({s.domain}) {s.url}: {s.extracted_content[:SUMMARY_SOURCE_CHARS]}..."
        for idx, s in enumerate(sources, start=1)
    )
    facts_summary = "\n".join(f"- {f.claim} (confidence: {f.confidence:.2f})" for f in facts if f.verified)
    return (
        f"Research Query: {query}\n\n"
        f"Sources:\n{sources_summary or 'No sources were found.'}\n\n"
        f"Verified Facts:\n{facts_summary or 'None.'}\n\n"
        f"Generate a comprehensive {report_type} that answers the research query."
    )
