import json
import logging

import pytest

from emergencycash import cli, config
from emergencycash.identity import derive_identity

from conftest import MASTER_SECRET, MERCHANT, TOKEN, UID


@pytest.fixture(autouse=True)
def cli_config(monkeypatch, db_file):
    monkeypatch.setattr(config, "MASTER_SECRET", MASTER_SECRET)
    monkeypatch.setattr(config, "MASTER_SECRET_ENCODING", "auto")
    monkeypatch.setattr(config, "MERCHANT_ADDR", MERCHANT)
    monkeypatch.setattr(config, "TOKEN_ADDR", TOKEN)
    monkeypatch.setattr(config, "ENS_PARENT_NAME", "")
    monkeypatch.setattr(config, "DB_PATH", str(db_file))
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def sign(capsys, *extra):
    code = cli.main(["sign", "--uid", UID, "--amount", "1.5", "--nonce", "7", *extra])
    assert code == 0
    out = capsys.readouterr().out
    line = [l for l in out.splitlines() if l.startswith(cli.INTENT_PREFIX)][0]
    return json.loads(line[len(cli.INTENT_PREFIX):])


def write_intent(tmp_path, data):
    path = tmp_path / "intent.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_derive(capsys):
    assert cli.main(["derive", "--uid", "ca0f79b4"]) == 0
    out = capsys.readouterr().out
    assert derive_identity(MASTER_SECRET, UID).address in out
    assert MASTER_SECRET not in out


def test_derive_with_parent_name(capsys, monkeypatch):
    monkeypatch.setattr(config, "ENS_PARENT_NAME", "emergencycash.eth")
    cli.main(["derive", "--uid", UID])
    assert "ca0f79b4.emergencycash.eth" in capsys.readouterr().out


def test_missing_master_secret(monkeypatch, capsys):
    monkeypatch.setattr(config, "MASTER_SECRET", "")
    assert cli.main(["derive", "--uid", UID]) == 1
    assert "MASTER_SECRET" in capsys.readouterr().err


def test_sign_output(capsys):
    data = sign(capsys)
    assert data["uid"] == UID
    assert data["amount"] == "1500000"
    assert data["nonce"] == "7"
    assert data["merchant"] == MERCHANT


def test_sign_rejects_excess_precision(capsys):
    code = cli.main(["sign", "--uid", UID, "--amount", "1.0000001"])
    assert code == cli.EXIT_CODES[cli.RejectReason.INVALID_INTENT]


def test_verify_valid(capsys, tmp_path):
    path = write_intent(tmp_path, sign(capsys))
    assert cli.main(["verify", "--intent", path]) == 0
    assert "VALID" in capsys.readouterr().out


def test_verify_accepts_marker_line(capsys, tmp_path):
    data = sign(capsys)
    path = tmp_path / "intent.txt"
    path.write_text(f"{cli.INTENT_PREFIX} {json.dumps(data)}\n")
    assert cli.main(["verify", "--intent", str(path)]) == 0


def test_verify_tampered(capsys, tmp_path):
    data = sign(capsys)
    data["merchant"] = "0x9999999999999999999999999999999999999999"
    data.pop("hash")
    assert cli.main(["verify", "--intent", write_intent(tmp_path, data)]) == 2


def test_verify_expired(capsys, tmp_path):
    data = sign(capsys, "--expiry", "1000")
    assert cli.main(["verify", "--intent", write_intent(tmp_path, data)]) == 3


def test_verify_not_json(tmp_path):
    path = tmp_path / "intent.json"
    path.write_text("not json")
    assert cli.main(["verify", "--intent", str(path)]) == 2


def test_revoke_commands(capsys):
    assert cli.main(["revoke", "add", "ca0f79b4"]) == 0
    assert cli.main(["revoke", "list"]) == 0
    assert capsys.readouterr().out.splitlines()[-1] == UID
    assert cli.main(["revoke", "rm", UID]) == 0
    cli.main(["revoke", "list"])
    assert UID not in capsys.readouterr().out.splitlines()


def test_revoke_import(capsys, tmp_path):
    path = tmp_path / "revoked.json"
    path.write_text(json.dumps({"revoked": ["aa01", "BB02"]}))
    assert cli.main(["revoke", "import", str(path)]) == 0
    cli.main(["revoke", "list"])
    assert capsys.readouterr().out.splitlines()[-2:] == ["AA01", "BB02"]


def test_sign_refuses_revoked_uid(capsys):
    cli.main(["revoke", "add", UID.lower()])
    capsys.readouterr()
    assert cli.main(["sign", "--uid", UID, "--amount", "1.0"]) == 4
    captured = capsys.readouterr()
    assert cli.INTENT_PREFIX not in captured.out
    assert "revoked" in captured.err

    cli.main(["revoke", "rm", UID])
    assert sign(capsys)["amount"] == "1500000"


def test_ledger_import_and_list(capsys, tmp_path):
    card = derive_identity(MASTER_SECRET, UID).address
    path = tmp_path / "used.json"
    path.write_text(json.dumps({"used": [f"{card}:1", f"{card}:2"]}))
    assert cli.main(["ledger", "import", str(path)]) == 0
    assert "Imported 2" in capsys.readouterr().out
    cli.main(["ledger", "list"])
    assert capsys.readouterr().out.splitlines() == [f"{card.lower()}:1", f"{card.lower()}:2"]


def test_ledger_import_malformed(tmp_path):
    path = tmp_path / "used.json"
    path.write_text(json.dumps({"used": ["nonsense"]}))
    assert cli.main(["ledger", "import", str(path)]) == 1


def test_settle_without_rpc(monkeypatch, capsys, tmp_path):
    monkeypatch.setattr(config, "RPC_URL", "")
    path = write_intent(tmp_path, sign(capsys))
    assert cli.main(["settle", "--intent", path]) == 1


def test_no_command(capsys):
    assert cli.main([]) == 1
