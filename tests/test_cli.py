import json

import respx
from httpx import Response

import research_cli


def test_research_command_posts_request_and_prints_report(capsys):
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:

        def handler(request):
            captured["json"] = json.loads(request.content.decode("utf-8"))
            return Response(
                200,
                json={
                    "success": True,
                    "report": "# CDN report",
                    "metadata": {"total_sources": 3, "queries_executed": 4, "model_used": "qwen-2.5"},
                },
            )

        respx_mock.post("http://api.test/api/research").mock(side_effect=handler)
        code = research_cli.main(
            ["--base-url", "http://api.test", "research", "What is a CDN?", "--no-verify", "--max-sources", "5"]
        )

    assert code == 0
    assert captured["json"] == {
        "query": "What is a CDN?",
        "report_type": "research_report",
        "include_fact_verification": False,
        "prefer_local": True,
        "max_sources": 5,
    }
    out = capsys.readouterr().out
    assert "# CDN report" in out
    assert "Sources: 3" in out


def test_research_command_reports_failure(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post("http://api.test/api/research").mock(
            return_value=Response(502, json={"success": False, "error": "All models failed"})
        )
        code = research_cli.main(["--base-url", "http://api.test", "research", "q"])
    assert code == 1
    assert "All models failed" in capsys.readouterr().out


def test_models_command_lists_catalog(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get("http://api.test/api/models").mock(
            return_value=Response(
                200,
                json={"models": [{"id": "gpt-4o", "tier": "commercial", "provider": "openai", "credential_ok": False}]},
            )
        )
        code = research_cli.main(["--base-url", "http://api.test", "models"])
    assert code == 0
    out = capsys.readouterr().out
    assert "gpt-4o" in out
    assert "no key" in out
