import json
import os
import sys

import cli

EXAMPLE = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples", "bootstrap", "manifest.json")


def _write(tmp_path, data):
    p = tmp_path / "manifest.json"
    p.write_text(json.dumps(data))
    return str(p)


def _py(code):
    return [sys.executable, "-c", code]


def test_validate_prints_order(capsys):
    rc = cli.main(["validate", EXAMPLE, "--var", "PEER_KEYPAIR=a2V5"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["order"][0] == "init"
    assert {"from": "init", "to": "lotus", "condition": "completed_successfully"} in out["edges"]


def test_validate_config_error(capsys):
    assert cli.main(["validate", EXAMPLE]) == 2
    assert "PEER_KEYPAIR" in capsys.readouterr().err


def test_bad_var_syntax(tmp_path):
    assert cli.main(["validate", EXAMPLE, "--var", "oops"]) == 2


def test_run_with_local_processes(tmp_path, capsys):
    manifest = {
        "name": "local",
        "timeout_s": 30,
        "grace_period_s": 1,
        "nodes": [
            {"id": "prepare", "command": _py("print('${CHAIN}')"), "probe": {"kind": "process_exit", "interval_s": 0.05}},
            {
                "id": "server",
                "command": _py("import time; time.sleep(30)"),
                "requires": "started",
                "depends_on": {"prepare": {"condition": "service_completed_successfully"}},
                "probe": {"kind": "process_started", "interval_s": 0.05},
            },
            {
                "id": "verify",
                "command": _py("pass"),
                "depends_on": {"server": {"condition": "service_started"}},
                "probe": {"kind": "process_exit", "interval_s": 0.05},
            },
        ],
    }
    report_file = tmp_path / "report.json"
    rc = cli.main(["run", _write(tmp_path, manifest), "--invoker", "process", "--report-file", str(report_file)])

    assert rc == 0
    report = json.loads(capsys.readouterr().out)
    assert report["success"] is True
    assert [n["node_id"] for n in report["nodes"]] == ["prepare", "server", "verify"]
    assert json.loads(report_file.read_text())["run_id"] == report["run_id"]


def test_run_failure_exit_code(tmp_path, capsys):
    manifest = {
        "name": "broken",
        "nodes": [
            {"id": "prepare", "command": _py("import sys; sys.exit(4)"), "probe": {"kind": "process_exit", "interval_s": 0.05}},
            {"id": "after", "command": _py("pass"), "depends_on": {"prepare": {"condition": "service_completed_successfully"}}},
        ],
    }
    rc = cli.main(["run", _write(tmp_path, manifest), "--invoker", "process", "--timeout", "30"])

    assert rc == 1
    report = json.loads(capsys.readouterr().out)
    states = {n["node_id"]: n["state"] for n in report["nodes"]}
    assert states == {"prepare": "failed", "after": "cancelled"}


def test_run_config_error(tmp_path):
    manifest = {"nodes": [{"id": "a", "command": ["true"], "depends_on": ["b"]}]}
    assert cli.main(["run", _write(tmp_path, manifest), "--invoker", "process"]) == 2


def test_non_numeric_port_is_config_error(tmp_path, capsys):
    path = _write(tmp_path, {"nodes": [{"id": "a", "command": ["true"]}]})
    assert cli.main(["validate", path, "--var", "RPC_PORT=abc"]) == 2
    assert "RPC_PORT" in capsys.readouterr().err
    assert cli.main(["run", path, "--invoker", "process", "--var", "P2P_PORT=x"]) == 2
