from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import pytest
import yaml

import foreman


def _write_settings(tmp_path: Path, settings: dict) -> Path:
    path = tmp_path / "foreman.yaml"
    path.write_text(yaml.safe_dump(settings, sort_keys=False), encoding="utf-8")
    return path


def _proto(**overrides: Any) -> foreman.JobTypeDescriptor:
    values: Dict[str, Any] = {
        "type": "custom",
        "group": "",
        "nodes": foreman.NodeConstraints(available=("a", "b", "c"), min=2, max=3),
        "params": (),
        "props": (),
    }
    values.update(overrides)
    return foreman.JobTypeDescriptor(**values)


def test_parse_datetime_accepted_forms() -> None:
    now = datetime(2024, 5, 6, 7, 8, 9)
    assert foreman.parse_datetime("31-12-2024 23:59:59") == datetime(2024, 12, 31, 23, 59, 59)
    assert foreman.parse_datetime("2024-02-29 10:00:00") == datetime(2024, 2, 29, 10, 0, 0)
    assert foreman.parse_datetime("20240229100000") == datetime(2024, 2, 29, 10, 0, 0)
    assert foreman.parse_datetime("12-11-2024") == datetime(2024, 11, 12)
    assert foreman.parse_datetime("2024-11-12") == datetime(2024, 11, 12)
    assert foreman.parse_datetime("20241112") == datetime(2024, 11, 12)
    assert foreman.parse_datetime("12:30:15", now=now) == datetime(2024, 5, 6, 12, 30, 15)


def test_parse_datetime_rejects_out_of_range_fields() -> None:
    assert foreman.parse_datetime("2023-02-29") is None
    assert foreman.parse_datetime("29-02-2024") == datetime(2024, 2, 29)
    assert foreman.parse_datetime("2100-02-29") is None
    assert foreman.parse_datetime("1899-12-31") is None
    assert foreman.parse_datetime("2101-01-01") is None
    assert foreman.parse_datetime("2100-12-31") == datetime(2100, 12, 31)
    assert foreman.parse_datetime("32-01-2024") is None
    assert foreman.parse_datetime("2024-13-01") is None
    assert foreman.parse_datetime("24:00:00") is None
    assert foreman.parse_datetime("10:60:00") is None
    assert foreman.parse_datetime("2024-01-01 10:00:60") is None


def test_parse_datetime_malformed_fields() -> None:
    assert foreman.parse_datetime("31-13-2024") is None
    assert foreman.parse_datetime("25:61:00") is None
    assert foreman.parse_datetime("29-02-2023") is None


def test_parse_datetime_rejects_other_text() -> None:
    assert foreman.parse_datetime("tomorrow") is None
    assert foreman.parse_datetime("2024/01/01") is None
    assert foreman.parse_datetime("") is None
    assert foreman.parse_datetime(None) is None
    assert foreman.parse_datetime(20240101) is None


def test_format_datetime_round_trips_canonical_form() -> None:
    value = datetime(2030, 1, 2, 3, 4, 5)
    assert foreman.format_datetime(value) == "2030-01-02 03:04:05"
    assert foreman.parse_datetime(foreman.format_datetime(value)) == value


def test_missing_settings_file_uses_defaults(tmp_path: Path) -> None:
    settings = foreman.load_settings(tmp_path / "absent.yaml")
    assert settings == foreman.Settings.default()
    assert settings.stream.reconnect_delay_ms == 1000
    assert settings.observer.min_delay_ms == 1000
    assert settings.observer.dense_threshold == 5


def test_settings_file_overrides(tmp_path: Path) -> None:
    path = _write_settings(
        tmp_path,
        {
            "endpoint": "https://jobs.example.org/console/",
            "request_timeout_ms": 2500,
            "stream": {"reconnect_delay_ms": 250},
            "observer": {"min_delay_ms": 0, "dense_threshold": 3},
        },
    )
    settings = foreman.load_settings(path)
    assert settings.endpoint == "https://jobs.example.org/console/"
    assert settings.request_timeout_ms == 2500
    assert settings.stream.reconnect_delay_ms == 250
    assert settings.observer.min_delay_ms == 0
    assert settings.observer.dense_threshold == 3


def test_settings_reject_unknown_keys(tmp_path: Path) -> None:
    path = _write_settings(tmp_path, {"endpoint": "http://localhost", "verbose": True})
    with pytest.raises(foreman.ConfigError, match="Unknown keys in settings"):
        foreman.load_settings(path)

    path = _write_settings(tmp_path, {"observer": {"delay": 5}})
    with pytest.raises(foreman.ConfigError, match="Unknown keys in observer"):
        foreman.load_settings(path)


def test_settings_reject_bad_values(tmp_path: Path) -> None:
    path = _write_settings(tmp_path, {"endpoint": "ftp://jobs"})
    with pytest.raises(foreman.ConfigError, match="endpoint must be an HTTP URL"):
        foreman.load_settings(path)

    path = _write_settings(tmp_path, {"stream": {"reconnect_delay_ms": 0}})
    with pytest.raises(foreman.ConfigError, match="stream.reconnect_delay_ms must be >= 1"):
        foreman.load_settings(path)

    path = _write_settings(tmp_path, {"request_timeout_ms": "fast"})
    with pytest.raises(foreman.ConfigError, match="request_timeout_ms must be an integer"):
        foreman.load_settings(path)


def test_build_config_indexes_catalog(config: foreman.ConsoleConfig) -> None:
    assert [job.type for job in config.jobs] == ["example", "cleanup", "report"]
    assert config.groups == ["", "maintenance"]
    assert [job.type for job in config.jobs_by_group[""]] == ["example"]
    assert [job.type for job in config.jobs_by_group["maintenance"]] == ["cleanup", "report"]
    assert config.jobs_by_type["report"].nodes.default == frozenset({"worker-1"})
    assert config.jobs_by_type["example"].nodes.default == frozenset({"broker"})
    assert config.is_loaded
    assert config.auth == {"user": "operator", "pass": "s3cret"}


def test_build_config_ignores_server_observer_options(catalog_payload: Dict[str, Any]) -> None:
    catalog_payload["observer"] = {"eventFilter": "create"}
    config = foreman.build_config(catalog_payload)
    assert not hasattr(config, "observer")
    assert not hasattr(foreman.JobDraft.fresh(config.jobs_by_type["report"]), "group")


def test_build_config_props_fall_back_to_global(config: foreman.ConsoleConfig) -> None:
    assert [spec.name for spec in config.jobs_by_type["example"].props] == ["author"]
    assert [spec.name for spec in config.jobs_by_type["cleanup"].props] == ["priority"]
    assert config.jobs_by_type["cleanup"].is_delay_restricted("update")
    assert not config.jobs_by_type["report"].is_delay_restricted("update")


def test_build_config_rejects_malformed_jobs(catalog_payload: Dict[str, Any]) -> None:
    catalog_payload["jobs"].append({"group": "x"})
    with pytest.raises(foreman.ConfigError, match=r"jobs\[3\].type"):
        foreman.build_config(catalog_payload)


def test_empty_config_is_not_loaded() -> None:
    config = foreman.empty_config(error="boom")
    assert not config.is_loaded
    assert config.jobs == []
    assert config.jobs_by_group == {"": []}
    assert config.error == "boom"


def test_fresh_draft_injects_defaults(config: foreman.ConsoleConfig) -> None:
    draft = foreman.JobDraft.fresh(config.jobs_by_type["example"])
    assert draft.nodes == {"broker"}
    assert draft.params == {"force": True}
    assert draft.props == {}
    assert not draft.is_valid
    assert draft.param_errors == {"path": "Parameter is required"}

    assert draft.set_param("path", "/tmp/data")
    assert draft.is_valid
    assert draft.param_errors == {}


def test_node_count_errors() -> None:
    draft = foreman.JobDraft.fresh(_proto())
    assert draft.nodes_error == "Choose at least one node"
    draft.select_node("a")
    assert draft.nodes_error == "Too few nodes (minimum 2 required)"
    draft.select_node("b")
    assert draft.is_valid

    proto = _proto(nodes=foreman.NodeConstraints(available=("a", "b", "c"), min=0, max=2))
    draft = foreman.JobDraft(proto=proto, nodes={"a", "b", "c"})
    assert not draft.validate()
    assert draft.nodes_error == "Too many nodes (maximum 2 allowed)"
    draft.select_node("c", selected=False)
    assert draft.is_valid


def test_datetime_and_flag_params() -> None:
    params = (
        foreman.ParamSpec(name="when", type="datetime"),
        foreman.ParamSpec(name="dry", type="flag", required=True),
    )
    draft = foreman.JobDraft(proto=_proto(params=params), nodes={"a", "b"})
    assert draft.validate()

    draft.set_param("when", "not a date")
    assert draft.param_errors == {"when": "Incorrect datetime"}
    draft.set_param("when", "2030-01-01 10:00:00")
    assert draft.is_valid
    draft.set_param("when", "")
    assert draft.is_valid


def test_valid_changed_fires_only_on_transition() -> None:
    fired: List[bool] = []
    draft = foreman.JobDraft(proto=_proto(), nodes={"a"}, on_valid_changed=lambda item: fired.append(item.is_valid))
    draft.validate()
    draft.validate()
    assert fired == []
    draft.select_node("b")
    draft.select_node("c")
    assert fired == [True]
    draft.select_node("c", selected=False)
    draft.select_node("b", selected=False)
    assert fired == [True, False]


def test_draft_request_cleans_empty_fields(config: foreman.ConsoleConfig) -> None:
    draft = foreman.JobDraft.fresh(config.jobs_by_type["example"])
    draft.nodes = {"worker-2", "broker"}
    draft.params.update({"path": "/srv", "force": False, "when": "", "depth": 0})
    draft.props["author"] = None
    assert draft.to_request() == {
        "type": "example",
        "nodes": ["broker", "worker-2"],
        "params": {"path": "/srv"},
        "props": {},
    }
    assert foreman.JobDraft().to_request() is None


def test_job_list_add_remove_and_validity(config: foreman.ConsoleConfig) -> None:
    changes: List[int] = []
    jobs = foreman.JobList(on_changed=lambda drafts: changes.append(len(drafts)))
    jobs.reset()
    assert len(jobs.drafts) == 1
    assert not jobs.is_valid

    jobs.set_proto(0, config.jobs_by_type["report"])
    assert jobs.is_valid

    jobs.add()
    assert not jobs.is_valid
    assert not jobs.remove(5)
    assert jobs.remove(1)
    assert jobs.is_valid
    assert not jobs.remove(0)
    assert len(jobs.drafts) == 1
    assert changes == [1, 1, 2, 1]


def test_job_list_tracks_draft_transitions(config: foreman.ConsoleConfig) -> None:
    jobs = foreman.JobList()
    jobs.replace([foreman.JobDraft.fresh(config.jobs_by_type["example"])])
    assert not jobs.is_valid
    jobs.drafts[0].set_param("path", "/srv")
    assert jobs.is_valid
    assert jobs.requests()[0]["type"] == "example"


def test_delay_form_defaults_to_immediate_create(config: foreman.ConsoleConfig) -> None:
    form = foreman.DelayForm(config)
    assert form.action == "create"
    assert form.mode == "time"
    assert form.is_immediate
    assert form.is_valid
    assert form.label == "Create"
    assert form.build([{"type": "report"}]) == {}


def test_delay_form_time_mode(config: foreman.ConsoleConfig) -> None:
    form = foreman.DelayForm(config)
    assert form.set_date("02-01-2030 03:04:05")
    assert form.time == "2030-01-02 03:04:05"
    assert form.label == "Delay"
    assert form.build([{"type": "report"}, {"type": "example"}]) == {
        "summary": "report",
        "time": "2030-01-02 03:04:05",
    }
    assert form.build([{"type": "report"}], summary="nightly") == {
        "summary": "nightly",
        "time": "2030-01-02 03:04:05",
    }

    assert not form.set_date("2030-02-30")
    assert form.time is None
    assert form.date_error

    assert form.set_date("")
    assert form.is_immediate


def test_delay_form_crontab_mode(config: foreman.ConsoleConfig) -> None:
    form = foreman.DelayForm(config)
    form.set_date("2030-01-02")
    form.switch_mode("crontab")
    assert form.time is None
    assert form.is_valid

    assert not form.set_crontab("every day")
    assert form.set_crontab("*/5 * * * *")
    assert not form.set_skip("two")
    assert form.set_skip("3")
    form.set_pause(True)
    assert form.build([{"type": "report"}]) == {
        "summary": "report",
        "crontab": "*/5 * * * *",
        "skip": 3,
        "pause": 1,
    }

    form.switch_mode("time")
    assert form.crontab is None
    assert form.skip is None
    assert not form.pause


def test_delay_form_update_requires_schedule(config: foreman.ConsoleConfig) -> None:
    form = foreman.DelayForm(config)
    form.load({"id": 7, "time": "2030-01-02 03:04:05", "summary": "nightly", "update_count": 4})
    assert form.action == "update"
    assert form.label == "Delay"
    assert form.is_valid
    assert form.build([{"type": "report"}]) == {"summary": "nightly", "time": "2030-01-02 03:04:05", "id": 7}

    assert not form.set_date(None)
    form.switch_mode("crontab")
    assert not form.is_valid

    form.load({"id": 8, "crontab": "0 1 * * *", "skip": 2, "pause": True, "update_count": 1})
    assert form.mode == "crontab"
    assert form.is_valid
    assert form.build([{"type": "report"}])["pause"] == 1

    form.reset()
    assert form.action == "create"
    assert form.id is None


def test_delay_form_restrictions(config: foreman.ConsoleConfig, catalog_payload: Dict[str, Any]) -> None:
    form = foreman.DelayForm(config)
    cleanup = foreman.JobDraft.fresh(config.jobs_by_type["cleanup"])
    assert not form.jobs_changed([cleanup])

    form.load({"id": 3, "time": "2030-01-01"})
    assert form.jobs_changed([cleanup])
    assert not form.jobs_changed([foreman.JobDraft.fresh(config.jobs_by_type["report"])])

    catalog_payload["delayRestricted"] = {"create": True}
    restricted = foreman.DelayForm(foreman.build_config(catalog_payload))
    assert restricted.is_restricted


def test_delay_form_preview_uses_crontab(config: foreman.ConsoleConfig) -> None:
    form = foreman.DelayForm(config)
    now = datetime(2024, 1, 1, 8, 0, 0)
    assert form.preview(2, now) == []
    form.switch_mode("crontab")
    form.set_crontab("0 9 * * *")
    assert form.preview(2, now) == [datetime(2024, 1, 1, 9, 0), datetime(2024, 1, 2, 9, 0)]


def test_server_error_text() -> None:
    assert foreman.server_error({"message": "Bad input", "error": "x"}, 400) == "Bad input"
    assert foreman.server_error({"error": "nope"}, 500) == "nope"
    assert foreman.server_error({"exception": "KeyError"}, 500) == "exception arised 'KeyError'"
    assert foreman.server_error("Gateway down", 502) == "Gateway down (502)"
    assert foreman.server_error(None, 503) == "unknown error (503)"


def test_classify_event() -> None:
    kinds = foreman.EventKind
    assert foreman.classify_event(kinds.CREATE, {}) == "text-primary"
    assert foreman.classify_event(kinds.UPDATE_DELAYED_WORK, {}) == "text-primary"
    assert foreman.classify_event(kinds.REDIRECT, {}) == "text-info"
    assert foreman.classify_event(kinds.PROCESS_DELAYED_WORK, {}) == "text-info"
    assert foreman.classify_event(kinds.FINISH, {"success": 1}) == "text-success"
    assert foreman.classify_event(kinds.FINISH, {"success": 0}) == "text-danger"
    assert foreman.classify_event(kinds.FINISH_JOBSET, {}) == "text-success"
    assert foreman.classify_event(kinds.CLEAN_JOBSET, {}) == "text-danger"
    assert foreman.classify_event(kinds.DELETE_DELAYED_WORK, {}) == "text-danger"
    assert foreman.classify_event(kinds.GET_DELAYED_WORKS, {}) is None
    assert foreman.classify_event(kinds.STATUS, {}) is None
    assert foreman.EventKind.parse("bogus") is None
    assert foreman.EventKind.parse(None) is None


def test_parse_job_file(tmp_path: Path, config: foreman.ConsoleConfig) -> None:
    payload = {
        "jobs": [
            {"type": "example", "nodes": ["worker-1"], "params": {"path": "/srv"}},
            {"type": "report"},
        ],
        "delay": {"crontab": "0 2 * * *", "skip": 1},
    }
    drafts, delay = foreman.parse_job_file(payload, config)
    assert [draft.is_valid for draft in drafts] == [True, True]
    assert drafts[0].nodes == {"worker-1"}
    assert drafts[0].params == {"force": True, "path": "/srv"}
    assert delay == {"crontab": "0 2 * * *", "skip": 1}

    with pytest.raises(foreman.ConfigError, match='Unknown job type "missing"'):
        foreman.parse_job_file({"jobs": [{"type": "missing"}]}, config)
    with pytest.raises(foreman.ConfigError, match="cannot mix"):
        foreman.parse_job_file({"jobs": [{"type": "report"}], "delay": {"time": "x", "crontab": "y"}}, config)


def test_cli_preview(capsys: pytest.CaptureFixture[str]) -> None:
    assert foreman.main(["preview", "--crontab", "0 9 * * *", "--count", "3"]) == 0
    output = capsys.readouterr().out
    assert "Next 3 run(s)" in output
    assert output.count("09:00:00") == 3

    assert foreman.main(["preview", "--crontab", "nonsense"]) == 1
    assert foreman.main(["preview", "--crontab", "0 9 * * *", "--count", "0"]) == 1
