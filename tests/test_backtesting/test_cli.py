"""
Tests for the command-line runner.

End-to-end runs read candles from a --csv-dir of {symbol}_{tf}.csv files
written from the wave_market and ob_market fixtures.
"""

import json
from datetime import datetime, timezone

import pandas as pd
import pytest

from smc.backtesting.config import StrategyVariant
from smc.backtesting.runners import cli

WINDOW = ['--start', '2024-01-07', '--end', '2024-01-11']


def _write_market(data_dir, market):
    data_dir.mkdir()
    for tf, candles in zip(('H4', 'H1', 'M5'), market):
        df = pd.DataFrame([c.to_dict() for c in candles])
        df.to_csv(data_dir / f'XAUUSD.s_{tf}.csv', index=False)
    return data_dir


@pytest.fixture
def csv_dir(tmp_path, wave_market):
    return _write_market(tmp_path / 'data', wave_market)


@pytest.fixture
def ob_csv_dir(tmp_path, ob_market):
    return _write_market(tmp_path / 'ob_data', ob_market)


class TestArguments:
    def test_defaults(self):
        args = cli.parse_args([])
        assert args.timeframe == 'standard'
        assert args.strategy == StrategyVariant.ORDER_BLOCK.value
        assert args.balance == 1000.0
        assert args.workers == 1
        assert not args.compare_all

    def test_build_config(self):
        args = cli.parse_args(['-b', '5000', '-r', '1.5', '--seed', '9', '--debug'])
        config = cli.build_config(args)
        assert config.initial_balance == 5000.0
        assert config.risk_percent == 1.5
        assert config.seed == 9
        assert config.debug_filters

    def test_symbols(self):
        assert cli.resolve_symbols(cli.parse_args(['--symbols', 'XAUUSD.s, BTCUSD,'])) == \
            ['XAUUSD.s', 'BTCUSD']
        assert cli.resolve_symbols(cli.parse_args(['-s', 'BTCUSD'])) == ['BTCUSD']

    def test_dates(self):
        start, end = cli.resolve_dates(cli.parse_args(['--end', '2024-01-11']))
        assert start == datetime(2024, 1, 4, tzinfo=timezone.utc)
        assert end == datetime(2024, 1, 11, 23, 59, 59, tzinfo=timezone.utc)
        assert (end - start).days == cli.DEFAULT_LOOKBACK_DAYS

    def test_default_end_covers_today(self):
        _, end = cli.resolve_dates(cli.parse_args([]))
        now = datetime.now(timezone.utc)
        assert end.date() == now.date()
        assert end >= now.replace(microsecond=0)

    def test_csv_keeps_candles_on_end_date(self, tmp_path):
        (tmp_path / 'XAUUSD.s_M5.csv').write_text(
            'time,open,high,low,close\n'
            '2024-01-10T23:55:00Z,1,2,0.5,1.5\n'
            '2024-01-11T15:30:00Z,1,2,0.5,1.5\n'
            '2024-01-12T00:00:00Z,1,2,0.5,1.5\n'
        )
        args = cli.parse_args(['--csv-dir', str(tmp_path), '--start', '2024-01-11',
                               '--end', '2024-01-11'])
        start, end = cli.resolve_dates(args)
        candles = cli.load_candles(args, 'XAUUSD.s', ['M5'], start, end)
        assert [c.time for c in candles['M5']] == [
            datetime(2024, 1, 11, 15, 30, tzinfo=timezone.utc)]

    def test_cache_dir_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv(cli.CACHE_DIR_ENV, str(tmp_path))
        assert cli.cache_dir(cli.parse_args([])) == tmp_path
        assert cli.cache_dir(cli.parse_args(['--cache-dir', 'other'])).name == 'other'


class TestOverrides:
    def test_none(self):
        assert cli.load_overrides(cli.parse_args([])) == {}

    def test_file(self, tmp_path):
        path = tmp_path / 'overrides.json'
        path.write_text(json.dumps({'fixedRR': 3}))
        assert cli.load_overrides(cli.parse_args(['--config', str(path)])) == {'fixedRR': 3}

    def test_missing_file_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            cli.load_overrides(cli.parse_args(['--config', str(tmp_path / 'nope.json')]))

    def test_non_object_exits(self, tmp_path):
        path = tmp_path / 'overrides.json'
        path.write_text('[1, 2]')
        with pytest.raises(SystemExit):
            cli.load_overrides(cli.parse_args(['--config', str(path)]))


class TestMain:
    def test_invalid_config_exits(self):
        with pytest.raises(SystemExit):
            cli.main(['-s', 'XAUUSD.s', '--risk', '0'])

    def test_missing_csv_gives_no_results(self, tmp_path):
        results = cli.main(['-s', 'XAUUSD.s', '--csv-dir', str(tmp_path)] + WINDOW)
        assert results == []

    def test_single_run_writes_outputs(self, csv_dir, tmp_path):
        output = tmp_path / 'out' / 'results.json'
        trades_csv = tmp_path / 'out' / 'trades.csv'

        results = cli.main(['-s', 'XAUUSD.s', '--csv-dir', str(csv_dir), '--seed', '7',
                            '--output', str(output), '--csv', str(trades_csv)] + WINDOW)

        assert [r.name for r in results] == ['XAUUSD.s']
        data = json.loads(output.read_text())
        assert data[0]['symbol'] == 'XAUUSD.s'
        assert data[0]['timeframe'] == 'standard'
        assert data[0]['total_trades'] == len(results[0].trades)
        assert trades_csv.exists() == bool(results[0].trades)

    def test_single_run_writes_trades(self, ob_csv_dir, tmp_path):
        output = tmp_path / 'out' / 'results.json'
        trades_csv = tmp_path / 'out' / 'trades.csv'

        results = cli.main(['-s', 'XAUUSD.s', '--csv-dir', str(ob_csv_dir), '--seed', '7',
                            '--start', '2024-01-06', '--end', '2024-01-10',
                            '--output', str(output), '--csv', str(trades_csv)])

        assert len(results[0].trades) == 1
        assert json.loads(output.read_text())[0]['total_trades'] == 1
        trades = pd.read_csv(trades_csv)
        assert len(trades) == 1

    def test_compare_all_with_custom_presets(self, csv_dir, tmp_path):
        presets = tmp_path / 'variations.json'
        presets.write_text(json.dumps([
            {'name': 'OB 70', 'strategy': 'ORDER_BLOCK', 'minOBScore': 70},
            {'name': 'FVG', 'strategy': 'FVG'},
            {'name': 'Sweep', 'strategy': 'LIQUIDITY_SWEEP'},
        ]))

        results = cli.main(['-s', 'XAUUSD.s', '--csv-dir', str(csv_dir), '--seed', '7',
                            '--compare-all', '--presets', str(presets), '--top', '2']
                           + WINDOW)

        assert [r.name for r in results] == ['OB 70', 'FVG']

    def test_compare_timeframes_uses_available_data(self, csv_dir, capsys):
        results = cli.main(['-s', 'XAUUSD.s', '--csv-dir', str(csv_dir),
                            '--compare-timeframes'] + WINDOW)

        # Only the M5 presets have LTF data in the directory
        assert results
        assert all(r.timeframe in ('standard', 'm5') for r in results)
        assert 'BACKTEST COMPARISON RESULTS' in capsys.readouterr().out
