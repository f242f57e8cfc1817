import pytest

from research_router import agents
from research_router.pipeline import ResearchPipeline, build_report_prompt, clean_sub_questions, merge_sources
from research_router.schemas import ResearchRequest, ResearchTask, SourceInfo
from tests.fakes import (
    FakeAdapter,
    FakeSourceProvider,
    hit,
    make_router,
    make_settings,
    provider_error,
    research_responder,
)

QUERY = "How do CDNs cache content?"


def _sources() -> FakeSourceProvider:
    return FakeSourceProvider(
        hits={
            QUERY: [hit("https://a.test/1", 0.9), hit("https://b.test/1", 0.4)],
            "What is A?": [hit("https://a.test/1", 0.6), hit("https://c.test/1", 0.7)],
            "What is B?": [hit("https://d.test/1", 0.2)],
        }
    )


def _pipeline(adapter: FakeAdapter, sources: FakeSourceProvider, **settings_overrides) -> ResearchPipeline:
    return ResearchPipeline(make_router(adapter), sources, make_settings(**settings_overrides))


def _systems(adapter: FakeAdapter):
    return [call["system"] for call in adapter.calls]


@pytest.mark.asyncio
async def test_full_research_run_produces_report_with_metadata():
    adapter = FakeAdapter(responder=research_responder())
    sources = _sources()
    pipeline = _pipeline(adapter, sources)

    result = await pipeline.run(ResearchRequest(query=QUERY))

    assert result.success is True
    assert result.report.startswith("# Report")
    assert result.error is None
    urls = [s.url for s in result.sources]
    assert urls == ["https://a.test/1", "https://c.test/1", "https://b.test/1", "https://d.test/1"]
    assert result.sources[0].domain == "a.test"
    assert result.sources[0].extracted_content == "Full content of https://a.test/1"
    assert result.facts_verified[0].claim == "A is B"
    meta = result.metadata
    assert meta.total_sources == 4
    assert meta.queries_executed == 3
    assert meta.model_used == "local"
    assert meta.sub_questions == ["What is A?", "What is B?"]
    assert meta.errors == []
    systems = _systems(adapter)
    assert systems[0] == agents.PLANNER_SYSTEM
    assert systems[1] == agents.VERIFIER_SYSTEM
    assert systems[2] == agents.writer_system("research_report")
    assert [call["task"] for call in adapter.calls] == ["planning", "reasoning", "synthesis"]


@pytest.mark.asyncio
async def test_unparseable_plan_falls_back_to_original_query():
    adapter = FakeAdapter(responder=research_responder(plan="not valid json"))
    sources = _sources()
    pipeline = _pipeline(adapter, sources)

    result = await pipeline.run(ResearchRequest(query=QUERY))

    assert result.success is True
    assert result.metadata.sub_questions == [QUERY]
    assert result.metadata.queries_executed == 1
    assert [c["query"] for c in sources.search_calls] == [QUERY]


@pytest.mark.asyncio
async def test_planning_router_failure_still_proceeds():
    adapter = FakeAdapter(responder=research_responder(plan=provider_error("planner down")))
    pipeline = _pipeline(adapter, _sources())

    result = await pipeline.run(ResearchRequest(query=QUERY))

    assert result.success is True
    assert result.metadata.sub_questions == [QUERY]
    assert any(err.startswith("planning:") for err in result.metadata.errors)


@pytest.mark.asyncio
async def test_synthesis_failure_returns_error_without_report():
    adapter = FakeAdapter(responder=research_responder(report=provider_error("writer down")))
    sources = _sources()
    pipeline = _pipeline(adapter, sources)

    result = await pipeline.run(ResearchRequest(query=QUERY))

    assert result.success is False
    assert result.report is None
    assert "writer down" in result.error
    assert "report" not in result.model_dump(exclude_none=True)
    # Earlier phases ran normally before the failure.
    assert len(sources.search_calls) == 3
    assert result.metadata.sub_questions == ["What is A?", "What is B?"]


@pytest.mark.asyncio
async def test_blank_report_is_a_failure():
    adapter = FakeAdapter(responder=research_responder(report="   "))
    result = await _pipeline(adapter, _sources()).run(ResearchRequest(query=QUERY))
    assert result.success is False
    assert "no content" in result.error


@pytest.mark.asyncio
async def test_verification_skipped_with_fewer_than_two_sources():
    adapter = FakeAdapter(responder=research_responder(plan='{"questions": []}'))
    sources = FakeSourceProvider(hits={QUERY: [hit("https://only.test/1")]})

    result = await _pipeline(adapter, sources).run(ResearchRequest(query=QUERY))

    assert result.success is True
    assert result.facts_verified == []
    assert agents.VERIFIER_SYSTEM not in _systems(adapter)


@pytest.mark.asyncio
async def test_verification_disabled_by_request():
    adapter = FakeAdapter(responder=research_responder())
    result = await _pipeline(adapter, _sources()).run(
        ResearchRequest(query=QUERY, include_fact_verification=False)
    )
    assert result.facts_verified == []
    assert agents.VERIFIER_SYSTEM not in _systems(adapter)


@pytest.mark.asyncio
async def test_bad_verification_output_yields_no_facts():
    adapter = FakeAdapter(responder=research_responder(facts='{"facts": "nope"}'))
    result = await _pipeline(adapter, _sources()).run(ResearchRequest(query=QUERY))
    assert result.success is True
    assert result.facts_verified == []


@pytest.mark.asyncio
async def test_search_and_scrape_failures_are_recorded_and_tolerated():
    adapter = FakeAdapter(responder=research_responder())
    sources = _sources()
    sources.failing_searches = {"What is B?"}
    sources.failing_scrapes = {"https://c.test/1"}

    result = await _pipeline(adapter, sources).run(ResearchRequest(query=QUERY))

    assert result.success is True
    assert "https://d.test/1" not in [s.url for s in result.sources]
    scraped_c = next(s for s in result.sources if s.url == "https://c.test/1")
    assert scraped_c.extracted_content == "Snippet for https://c.test/1"
    errors = result.metadata.errors
    assert any("What is B?" in err for err in errors)
    assert any("https://c.test/1" in err for err in errors)


@pytest.mark.asyncio
async def test_slow_search_times_out_without_cancelling_siblings():
    adapter = FakeAdapter(responder=research_responder())
    sources = _sources()
    sources.search_delays = {"What is A?": 0.5}

    result = await _pipeline(adapter, sources, search_timeout_s=0.05).run(ResearchRequest(query=QUERY))

    assert result.success is True
    assert [s.url for s in result.sources] == ["https://a.test/1", "https://b.test/1", "https://d.test/1"]
    assert any("timeout" in err for err in result.metadata.errors)


@pytest.mark.asyncio
async def test_search_splits_budget_and_caps_sources():
    adapter = FakeAdapter(responder=research_responder())
    sources = FakeSourceProvider(default_hits=[hit(f"https://s{i}.test/", 0.1 * i) for i in range(1, 6)])

    result = await _pipeline(adapter, sources).run(ResearchRequest(query=QUERY, max_sources=2))

    assert [c["max_results"] for c in sources.search_calls] == [1, 1, 1]
    assert len(result.sources) <= 2


@pytest.mark.asyncio
async def test_search_runs_in_batches_of_configured_concurrency():
    plan = '{"questions": ["q1", "q2", "q3", "q4"]}'
    adapter = FakeAdapter(responder=research_responder(plan=plan))
    sources = FakeSourceProvider(default_hits=[hit("https://x.test/")])

    result = await _pipeline(adapter, sources, search_concurrency=2).run(ResearchRequest(query=QUERY))

    assert result.metadata.queries_executed == 5
    assert [c["query"] for c in sources.search_calls] == [QUERY, "q1", "q2", "q3", "q4"]
    assert result.metadata.total_sources == 1


@pytest.mark.asyncio
async def test_only_top_sources_are_scraped():
    adapter = FakeAdapter(responder=research_responder())
    sources = _sources()

    result = await _pipeline(adapter, sources, extract_top_n=2).run(ResearchRequest(query=QUERY))

    assert sources.scrape_calls == ["https://a.test/1", "https://c.test/1"]
    assert result.sources[2].extracted_content == "Snippet for https://b.test/1"


@pytest.mark.asyncio
async def test_stage_methods_advance_task_state():
    adapter = FakeAdapter(responder=research_responder())
    pipeline = _pipeline(adapter, _sources())
    task = ResearchTask(query=QUERY)

    await pipeline.plan(task, prefer_local=True)
    await pipeline.search(task, max_sources=10)
    await pipeline.extract(task)
    await pipeline.verify(task, prefer_local=True)
    await pipeline.synthesize(task, "outline_report", prefer_local=True)

    assert task.history == ["created", "planning", "searching", "extracting", "verifying", "synthesizing"]
    assert task.report
    assert adapter.calls[-1]["system"] == agents.writer_system("outline_report")


def test_merge_sources_keeps_higher_score_regardless_of_order():
    low = SourceInfo(url="https://a.test", relevance_score=0.2, title="low")
    high = SourceInfo(url="https://a.test", relevance_score=0.8, title="high")
    other = SourceInfo(url="https://b.test", relevance_score=0.5)

    forward = merge_sources([low], [other, high])
    backward = merge_sources([high, other], [low])

    assert forward == backward
    assert [s.title for s in forward if s.url == "https://a.test"] == ["high"]
    assert merge_sources(forward, forward) == forward


def test_clean_sub_questions_dedupes_and_caps():
    questions = [" a ", "a", "", "b", "c", "d", "e", "f"]
    assert clean_sub_questions(questions, "q") == ["a", "b", "c", "d", "e"]
    assert clean_sub_questions([" ", ""], "q") == ["q"]


def test_report_prompt_numbers_sources_and_lists_verified_facts():
    sources = [
        SourceInfo(url="https://a.test", title="A", domain="a.test", extracted_content="x" * 900),
        SourceInfo(url="https://b.test", title="B", domain="b.test"),
    ]
    prompt = build_report_prompt(QUERY, sources, [], "research_report")
    assert "[1] A (a.test) https://a.test" in prompt
    assert "[2] B (b.test)" in prompt
    assert "x" * 501 not in prompt
    assert "Verified Facts:\nNone." in prompt
