"""
CLI smoke tests for the offline commands.
"""
import json

from ghostkey.cli.ghostkey import build_parser, main


def test_seal_then_unseal(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr("ghostkey.cli.ghostkey.setup_logging", lambda: None)
    source = tmp_path / "note.txt"
    sealed = tmp_path / "note.gk"
    restored = tmp_path / "note.out"
    source.write_bytes(b"offline secret")

    assert main(["seal", str(source), str(sealed)]) == 0
    assert sealed.read_bytes() != b"offline secret"
    assert main(["unseal", str(sealed), str(restored)]) == 0
    assert restored.read_bytes() == b"offline secret"
    assert "content id:" in capsys.readouterr().out


def test_unseal_garbage_reports_error(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr("ghostkey.cli.ghostkey.setup_logging", lambda: None)
    bad = tmp_path / "bad.gk"
    bad.write_bytes(b"nope")

    assert main(["unseal", str(bad), str(tmp_path / "out")]) == 1
    error = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert error["kind"] == "MalformedEnvelope"


def test_parser_knows_every_command():
    parser = build_parser()
    for argv in (["relay"], ["seal", "a", "b"], ["unseal", "a", "b"], ["upload", "a"], ["download", "id", "b"]):
        assert parser.parse_args(argv).command == argv[0]
