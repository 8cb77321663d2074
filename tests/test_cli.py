import json
import os
import textwrap

import pytest
import requests

from conftest import FakeClassifier
from nodegroup_sync.cli import load_manifest, main
from nodegroup_sync.core.validation import ValidationError

MANIFEST = textwrap.dedent("""
    Web:
      parent: Infra
      rule: ["and", ["=", ["fact", "role"], "web"]]
      pinned: [web01]
      classes:
        ntp:
          servers: [a, b]
    Infra:
      description: infrastructure
""")


@pytest.fixture()
def cli_env(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("NGS_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    fake = FakeClassifier()
    monkeypatch.setattr(requests, "Session", lambda: fake)
    return fake


def _run(tmp_path, *args, tls=True):
    base = ["--server", "puppet.example", "--attempts", "1", "--logs-dir", str(tmp_path / "logs"),
            "--console-level", "ERROR"]
    if tls:
        base += ["--cert", "agent.pem", "--key", "agent.key"]
    return main(base + list(args))


def _manifest(tmp_path, text=MANIFEST, name="groups.yaml"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_apply_creates_groups(tmp_path, cli_env, capsys):
    rc = _run(tmp_path, "apply", "--manifest", _manifest(tmp_path))
    out = capsys.readouterr().out
    assert rc == 0
    assert "CREATED=2" in out
    web = cli_env.by_name("Web")
    assert cli_env.groups[web["parent"]]["name"] == "Infra"
    assert ["=", "name", "web01"] in web["rule"]

    assert _run(tmp_path, "apply", "--manifest", _manifest(tmp_path)) == 0
    assert "UNCHANGED=2" in capsys.readouterr().out


def test_apply_dry_run_needs_no_tls(tmp_path, cli_env, capsys):
    rc = _run(tmp_path, "--format", "json", "apply", "--manifest", _manifest(tmp_path), "--dry-run", tls=False)
    out = capsys.readouterr().out
    assert rc == 0
    assert "PLANNED=2" in out
    assert cli_env.mutations() == []


def test_missing_tls_is_a_config_error(tmp_path, cli_env):
    assert _run(tmp_path, "list", tls=False) == 2
    assert cli_env.calls == []


def test_invalid_manifest_is_a_validation_error(tmp_path, cli_env):
    bad = _manifest(tmp_path, "Web:\n  pinned: [a]\n  unpinned: [a]\n")
    assert _run(tmp_path, "apply", "--manifest", bad) == 3
    assert _run(tmp_path, "apply", "--manifest", str(tmp_path / "missing.yaml")) == 3


def test_partial_failure_exit_code(tmp_path, cli_env, capsys):
    rc = _run(tmp_path, "apply", "--manifest", _manifest(tmp_path, "Web:\n  parent: Nowhere\nInfra: {}\n"))
    assert rc == 5
    out = capsys.readouterr().out
    assert "ERROR=1" in out and "CREATED=1" in out


def test_service_error_exit_code(tmp_path, cli_env):
    cli_env.fail[("GET", "groups")] = [404]
    assert _run(tmp_path, "list") == 4


def test_list_as_json(tmp_path, cli_env, capsys):
    cli_env.add("Web", rule=["or", ["=", "name", "web01"]])
    assert _run(tmp_path, "--format", "json", "list") == 0
    rows = json.loads(capsys.readouterr().out)
    assert [r["name"] for r in rows] == ["All Nodes", "Web"]
    web = rows[1]
    assert web["parent"] == "All Nodes"
    assert web["pinned"] == ["web01"]


def test_list_as_table(tmp_path, cli_env, capsys):
    cli_env.add("Web")
    assert _run(tmp_path, "list") == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("| name")
    assert any("Web" in line for line in lines[2:])


def test_classify(tmp_path, cli_env, capsys):
    assert _run(tmp_path, "classify", "web01", "--facts", '{"role": "web"}') == 0
    out = json.loads(capsys.readouterr().out)
    assert out["name"] == "web01"
    assert out["request"] == {"fact": {"role": "web"}}
    assert _run(tmp_path, "classify", "web01", "--facts", "[1]") == 3


def test_pin_unpin_delete(tmp_path, cli_env):
    gid = cli_env.add("Web")
    assert _run(tmp_path, "pin", "web", "a", "b") == 0
    assert _run(tmp_path, "unpin", gid, "a") == 0
    assert cli_env.groups[gid]["rule"] == ["or", ["=", "name", "b"]]
    assert _run(tmp_path, "pin", "Nope", "a") == 3

    assert _run(tmp_path, "delete", "Web") == 0
    assert gid not in cli_env.groups
    assert _run(tmp_path, "delete", "Web") == 0


def test_refresh_classes(tmp_path, cli_env):
    assert _run(tmp_path, "refresh-classes", "--environment", "staging") == 0
    assert cli_env.calls[-1][1] == "update-classes"


def test_manifest_shapes(tmp_path):
    as_list = _manifest(tmp_path, "- name: A\n- name: B\n  parent: A\n", "list.yaml")
    assert [s.name for s in load_manifest(as_list)] == ["A", "B"]

    as_json = _manifest(tmp_path, json.dumps({"groups": {"A": None, "B": {"description": None}}}), "g.json")
    specs = load_manifest(as_json)
    assert [s.name for s in specs] == ["A", "B"]

    with pytest.raises(ValidationError):
        load_manifest(_manifest(tmp_path, "just a string\n", "bad.yaml"))
