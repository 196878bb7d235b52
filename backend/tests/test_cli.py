import argparse
import asyncio
import json

import pytest

from medialink import cli
from medialink.db.session import create_engine_for

from media_helpers import create_schema, make_settings


@pytest.fixture
def cli_settings(tmp_path):
    settings = make_settings(tmp_path)

    async def _init() -> None:
        engine = create_engine_for(settings.database_url)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()

    asyncio.run(_init())
    return settings


def test_parser_knows_every_command() -> None:
    parser = cli._build_parser()
    assert parser.parse_args(["worker", "--queue", "video-processing"]).queue == ["video-processing"]
    assert parser.parse_args(["sweep", "--drain"]).drain is True
    assert parser.parse_args(["delete", "12"]).descriptor_id == 12
    with pytest.raises(SystemExit):
        parser.parse_args(["worker", "--queue", "thumbnails"])


def test_queue_stats_prints_every_queue(cli_settings, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli._run_cli_command(argparse.Namespace(command="queue-stats", queue=None), cli_settings) is True

    out = json.loads(capsys.readouterr().out)
    assert set(out) == {"image-processing", "video-processing"}
    assert out["image-processing"]["waiting"] == 0


def test_sweep_with_drain_reports_outcomes(cli_settings, capsys: pytest.CaptureFixture[str]) -> None:
    cli._run_cli_command(argparse.Namespace(command="sweep", drain=True), cli_settings)

    out = json.loads(capsys.readouterr().out)
    assert out == {"expired": 0, "image-processing": [], "video-processing": []}


def test_admin_commands_surface_error_codes(cli_settings) -> None:
    for command in ("retry", "reingest", "delete"):
        with pytest.raises(SystemExit) as exc:
            cli._run_cli_command(argparse.Namespace(command=command, descriptor_id=999), cli_settings)
        assert str(exc.value).startswith("not_found:")


def test_check_config_reports_problems(tmp_path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(cli, "ffmpeg_available", lambda settings: False)
    settings = make_settings(tmp_path, blob_signing_key=None, secret_key="")

    with pytest.raises(SystemExit) as exc:
        cli._run_cli_command(argparse.Namespace(command="check-config"), settings)

    assert exc.value.code == 1
    out = json.loads(capsys.readouterr().out)
    assert out["ok"] is False
    assert any("BLOB_SIGNING_KEY" in problem for problem in out["problems"])
    assert any("ffmpeg" in problem for problem in out["problems"])


def test_check_config_passes_for_local_setup(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "ffmpeg_available", lambda settings: True)
    assert cli.check_config(make_settings(tmp_path)) == []


def test_unknown_command_is_not_handled(cli_settings) -> None:
    assert cli._run_cli_command(argparse.Namespace(command=None), cli_settings) is False
