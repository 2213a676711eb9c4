from __future__ import annotations

import json
import logging

import pytest

import worker
from ai.embeddings import SentenceTransformerProvider
from talentpool.logging_config import JsonFormatter
from talentpool.pipelines.processing import ProcessingReport
from worker import build_parser


def test_worker_parser_subcommands():
    parser = build_parser()

    run = parser.parse_args(["run", "--max-jobs", "20", "--batch-size", "5"])
    assert (run.command, run.max_jobs, run.batch_size, run.delay) == ("run", 20, 5, None)

    backfill = parser.parse_args(["backfill", "--force-rewrite"])
    assert backfill.force_rewrite is True
    assert backfill.limit is None

    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_json_formatter_merges_extra_fields():
    record = logging.makeLogRecord({
        "name": "talentpool.pipelines.resolver",
        "levelname": "WARNING",
        "msg": "Ambiguous %s match",
        "args": ("email",),
        "anomaly": "ambiguous_email",
    })

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Ambiguous email match"
    assert payload["level"] == "WARNING"
    assert payload["anomaly"] == "ambiguous_email"


async def test_worker_run_logs_provider_and_returns_report(monkeypatch, caplog):
    provider = SentenceTransformerProvider("any-model", dim=4)
    seen = []

    async def fake_process(session_factory, used_provider, **kwargs):
        seen.append(used_provider)
        return ProcessingReport(selected=0)

    monkeypatch.setattr(worker, "get_default_provider", lambda: provider)
    monkeypatch.setattr(worker, "process_pending_jobs", fake_process)
    caplog.set_level(logging.INFO, logger="talentpool.worker")

    result = await worker._run(build_parser().parse_args(["run"]))

    assert seen == [provider]
    assert result["selected"] == 0
    assert "any-model" in caplog.text
