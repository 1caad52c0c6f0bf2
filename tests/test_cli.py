from pathlib import Path

import pytest
import typer
from rich.console import Console
from typer.testing import CliRunner

from coinbase_feed_lake.cli.app import _format_ms, _load_settings, _parse_gap_status, app
from coinbase_feed_lake.core.models import GapInterval, GapStatus, Message, SubscriptionKey
from coinbase_feed_lake.writer.store import SQLiteMessageStore

runner = CliRunner()


@pytest.fixture()
def store_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "lake.sqlite"
    monkeypatch.setenv("CFL_STORE_PATH", str(path))
    monkeypatch.setattr("coinbase_feed_lake.cli.app.configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr("coinbase_feed_lake.cli.app.console", Console(width=200))
    return path


def test_parse_gap_status_accepts_known_values() -> None:
    assert _parse_gap_status(None) is None
    assert _parse_gap_status("LOST") is GapStatus.LOST


def test_parse_gap_status_rejects_unknown_values() -> None:
    with pytest.raises(typer.BadParameter):
        _parse_gap_status("open")


def test_format_ms() -> None:
    assert _format_ms(None) == "-"
    assert _format_ms(0) == "1970-01-01T00:00:00+00:00"


def test_load_settings_applies_cli_overrides() -> None:
    settings = _load_settings(["sol-usd"], ["ticker"], discovery_enabled=None)

    assert settings.products == ["SOL-USD"]
    assert settings.channels == ["ticker"]


def test_load_settings_reports_invalid_channel() -> None:
    with pytest.raises(typer.BadParameter):
        _load_settings(None, ["level3"])


def test_init_store_creates_database(store_path: Path) -> None:
    result = runner.invoke(app, ["init-store"])

    assert result.exit_code == 0
    assert store_path.exists()


def test_show_offsets_lists_last_sequence(store_path: Path) -> None:
    store = SQLiteMessageStore(store_path)
    for sequence in (4, 9):
        store.append(
            Message(
                product_id="BTC-USD",
                channel="matches",
                type="match",
                sequence=sequence,
                payload={"trade_id": sequence},
                received_at_ms=0,
            )
        )

    result = runner.invoke(app, ["show-offsets"])

    assert result.exit_code == 0
    assert "BTC-USD" in result.output
    assert "9" in result.output


def test_show_gaps_filters_by_status(store_path: Path) -> None:
    store = SQLiteMessageStore(store_path)
    key = SubscriptionKey("BTC-USD", "matches")
    store.record_gap(key, GapInterval(3, 4))
    lost = store.record_gap(key, GapInterval(10, 12))
    store.resolve_gap(lost, GapStatus.LOST, missing=[10, 11, 12], detail="HTTP 503")

    result = runner.invoke(app, ["show-gaps", "--status", "lost"])

    assert result.exit_code == 0
    assert "10-12" in result.output
    assert "3-4" not in result.output


def test_show_gaps_without_records(store_path: Path) -> None:
    result = runner.invoke(app, ["show-gaps"])

    assert result.exit_code == 0
    assert "No gaps recorded" in result.output
