import json

import pytest

from ein_agent.capture import (
    DOCUMENT_CONTROLS,
    CapturePipeline,
    CaptureRequest,
    DownloadCapture,
    EncodedDownloadCapture,
    PrintToPdfCapture,
    StrategyError,
    artifact_name,
    artifacts_from_outcome,
    default_strategies,
    wait_for_completed_file,
)
from ein_agent.errors import InfrastructureError
from ein_agent.recovery import RecoveryLog, decode_document

LETTER = b"%PDF-1.7 letter"


@pytest.fixture
def recovery(tmp_path):
    return RecoveryLog(str(tmp_path / "recovery.jsonl"))


@pytest.fixture
def request_for(tmp_path, recovery):
    staging = tmp_path / "staging"
    staging.mkdir()

    def _make(label="EINLetter"):
        return CaptureRequest(
            run_id="run_1",
            record_id="a0X1",
            entity_name="Sunrise Holdings",
            label=label,
            staging_dir=staging,
            recovery=recovery,
        )

    return _make


def _recovered(recovery):
    with open(recovery.path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


def _drop_letter_on_click(fake_session, staging):
    control = DOCUMENT_CONTROLS[0].selector
    fake_session.present.add(control)
    fake_session.on_click[control] = lambda s: (staging / "CP575.pdf").write_bytes(LETTER)


class _Boom:
    name = "boom"
    self_audited = False

    def capture(self, session, request):
        raise StrategyError("no control")


def test_staging_poll_waits_out_partial_files(tmp_path):
    staging = tmp_path / "dl"
    staging.mkdir()
    (staging / "letter.pdf.crdownload").write_bytes(b"partial")
    (staging / "other.pdf").write_bytes(b"%PDF")

    state = {"waits": 0}

    def _wait(seconds):
        state["waits"] += 1
        (staging / "letter.pdf.crdownload").rename(staging / "letter.pdf")

    found = wait_for_completed_file(staging, timeout_s=5, poll_s=0.01, ignore={"other.pdf"}, wait=_wait)
    assert found == staging / "letter.pdf"
    assert state["waits"] == 1


def test_staging_poll_times_out(tmp_path):
    assert wait_for_completed_file(tmp_path, timeout_s=0, poll_s=0.01) is None


def test_first_strategy_failure_falls_through_to_next(fake_session, request_for, recovery):
    pipeline = CapturePipeline([_Boom(), PrintToPdfCapture()], recovery)
    outcome = pipeline.run(fake_session, request_for())

    assert outcome.succeeded
    assert outcome.strategy_name == "print_to_pdf"
    assert outcome.payload == fake_session.pdf_bytes
    assert [(a.strategy_name, a.succeeded) for a in outcome.attempts] == [("boom", False), ("print_to_pdf", True)]
    assert "no control" in outcome.attempts[0].error_detail


def test_success_is_audited_before_return(fake_session, request_for, recovery):
    CapturePipeline([PrintToPdfCapture()], recovery).run(fake_session, request_for())
    rows = _recovered(recovery)
    assert len(rows) == 1
    assert rows[0]["label"] == "EINLetter"
    assert decode_document(rows[0]["content_b64"]) == fake_session.pdf_bytes


def test_download_capture_reads_and_removes_staged_file(fake_session, request_for, recovery):
    req = request_for()
    _drop_letter_on_click(fake_session, req.staging_dir)
    outcome = CapturePipeline(default_strategies(timeout_s=0, poll_s=0.01), recovery).run(fake_session, req)

    assert outcome.strategy_name == "download"
    assert outcome.payload == LETTER
    assert len(outcome.attempts) == 1
    assert list(req.staging_dir.iterdir()) == []
    assert fake_session.printed == 0


def test_encoded_download_audits_once(fake_session, request_for, recovery):
    req = request_for()
    _drop_letter_on_click(fake_session, req.staging_dir)
    outcome = CapturePipeline([EncodedDownloadCapture(timeout_s=0)], recovery).run(fake_session, req)

    assert outcome.payload == LETTER
    rows = _recovered(recovery)
    assert [r["strategy"] for r in rows] == ["download_encoded"]
    assert not (req.staging_dir / "CP575.pdf").exists()


def test_all_strategies_fail(fake_session, request_for, recovery):
    fake_session.pdf_bytes = b""
    outcome = CapturePipeline(default_strategies(timeout_s=0), recovery).run(fake_session, request_for())
    assert not outcome.succeeded
    assert [a.strategy_name for a in outcome.attempts] == ["download", "download_encoded", "print_to_pdf"]
    assert outcome.attempts[-1].error_detail == "empty payload"


def test_exhaustive_mode_keeps_every_success(fake_session, request_for, recovery):
    req = request_for()
    _drop_letter_on_click(fake_session, req.staging_dir)
    outcome = CapturePipeline(default_strategies(timeout_s=0), recovery, stop_on_first=False).run(fake_session, req)
    assert [name for name, _ in outcome.successes] == ["download", "download_encoded", "print_to_pdf"]


def test_infrastructure_error_propagates(fake_session, request_for, recovery):
    class Dead:
        name = "dead"
        self_audited = False

        def capture(self, session, request):
            raise InfrastructureError("browser gone")

    with pytest.raises(InfrastructureError):
        CapturePipeline([Dead(), PrintToPdfCapture()], recovery).run(fake_session, request_for())


def test_download_without_control_is_strategy_error(fake_session, request_for):
    with pytest.raises(StrategyError):
        DownloadCapture(timeout_s=0).capture(fake_session, request_for())


def test_artifact_names_and_visibility(fake_session, request_for, recovery, llc_case):
    req = request_for()
    _drop_letter_on_click(fake_session, req.staging_dir)
    outcome = CapturePipeline(default_strategies(timeout_s=0), recovery, stop_on_first=False).run(fake_session, req)
    artifacts = artifacts_from_outcome(outcome, llc_case, client_visible=True)

    assert artifacts[0].logical_name == "EntityProcess/a0X5f000001/SunriseHoldingsLLC-ID-EINLetter.pdf"
    assert artifacts[0].visible
    assert [a.visible for a in artifacts[1:]] == [False, False]
    assert artifacts[2].logical_name.endswith("-ID-EINLetter-print_to_pdf.pdf")
    assert artifacts[0].external_ids == {"AccountId": "001A", "CaseId": "500C"}


def test_artifact_name_falls_back_for_blank_entity():
    from ein_agent.models import CaseRecord

    assert artifact_name(CaseRecord(record_id="R9"), "EINSubmissionFailure") == "EntityProcess/R9/Entity-ID-EINSubmissionFailure.pdf"
