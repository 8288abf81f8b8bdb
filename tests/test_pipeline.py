"""End-to-end runs of the badge and leaderboard pipelines against fakes."""

import json
import re
from functools import partial

import pytest

from batcher import RateLimitedBatcher
from config import ConfigError, parse_config
from oracle import StaticPriceSource
from pipeline import (
    Collaborators,
    build_collaborators,
    RetryFailure,
    RunContext,
    RunInProgressError,
    run_badges,
    run_leaderboard,
    run_scheduled,
    utc_timestamp,
    write_json_atomic,
)

from conftest import (
    MU,
    MUG,
    PUPS,
    FakeHolderSource,
    FakeLookup,
    FakePriceSource,
    SleepRecorder,
    addr,
    units,
)

ALICE, BOB_1, BOB_2, CAROL = addr(1), addr(2), addr(3), addr(4)

MU_TOKEN = {"symbol": "MU", "address": MU, "min_balance": 100}


def make_config(tmp_path, badges=None, leaderboard=None, mapping=None):
    project = {"name": "test", "output_folder": "output"}
    if mapping is not None:
        (tmp_path / "mapping.json").write_text(json.dumps(mapping))
        project["wallet_mapping_file"] = "mapping.json"
    raw = {"project": project}
    if badges is not None:
        raw["badges"] = badges
    if leaderboard is not None:
        raw["leaderboard"] = leaderboard
    return parse_config(raw, tmp_path)


def collaborators(batcher, tokens=None, nfts=None, lookup=None, price_source=None):
    return Collaborators(
        holder_source=FakeHolderSource(tokens=tokens, nfts=nfts),
        lookup=lookup or FakeLookup(),
        batcher=batcher,
        price_source=price_source,
    )


def read_output(tmp_path, name):
    return json.loads((tmp_path / "output" / name).read_text())


# ── badges ──────────────────────────────────────────────────────

class TestBadgeRun:
    async def test_resolved_holder_earns_basic(self, tmp_path, batcher):
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        deps = collaborators(
            batcher,
            tokens={MU: {ALICE: units(150), CAROL: units(20)}},
            lookup=FakeLookup(handles={ALICE: ("Alice", "https://img/a")}),
        )

        result = await run_badges(config, deps)

        assert result.basic_handles == ["alice"]
        assert result.basic_addresses == [ALICE]
        # carol never reaches the listing minimum, so is never looked up
        assert deps.lookup.address_calls == [ALICE]

        written = read_output(tmp_path, "badges.json")
        assert written["basic_handles"] == ["alice"]
        assert "upgraded_handles" not in written
        assert written["timestamp"].endswith("Z")

    @pytest.mark.parametrize("sum_mode, expected", [(True, ["bob"]), (False, [])])
    async def test_bob_two_wallets(self, tmp_path, batcher, sum_mode, expected):
        config = make_config(
            tmp_path,
            badges={"sum_of_balances": sum_mode, "basic": {"tokens": [MU_TOKEN]}},
            mapping={BOB_1: "bob", BOB_2: "@Bob"},
        )
        deps = collaborators(batcher, tokens={MU: {BOB_1: units(60), BOB_2: units(60)}})

        result = await run_badges(config, deps)

        assert result.basic_handles == expected
        # mapped wallets never need an address lookup
        assert deps.lookup.address_calls == []

    async def test_mapping_wins_over_resolved_handle(self, tmp_path, batcher):
        config = make_config(
            tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}}, mapping={ALICE: "alice"}
        )
        deps = collaborators(
            batcher,
            tokens={MU: {ALICE: units(150)}},
            lookup=FakeLookup(handles={ALICE: "impostor"}),
        )
        result = await run_badges(config, deps)
        assert result.basic_handles == ["alice"]

    async def test_upgraded_nft_tier(self, tmp_path, batcher):
        config = make_config(
            tmp_path,
            badges={
                "exclude_basic_for_upgraded": True,
                "basic": {"tokens": [MU_TOKEN]},
                "upgraded": {"nfts": [{"name": "Mu Pups", "address": PUPS, "min_balance": 2}]},
            },
        )
        deps = collaborators(
            batcher,
            tokens={MU: {ALICE: units(150), BOB_1: units(500)}},
            nfts={PUPS: {BOB_1: 3, ALICE: 1}},
            lookup=FakeLookup(handles={ALICE: "alice", BOB_1: "bob"}),
        )

        await run_badges(config, deps)

        written = read_output(tmp_path, "badges.json")
        assert written["basic_handles"] == ["alice"]
        assert written["upgraded_handles"] == ["bob"]
        assert written["upgraded_addresses"] == [BOB_1]

    async def test_oracle_failure_uses_fallback_price(self, tmp_path, batcher):
        dynamic_mug = {"symbol": "MUG", "address": MUG, "min_balance": 100, "dynamic": True}
        config = make_config(tmp_path, badges={"basic": {"tokens": [dynamic_mug]}})
        deps = collaborators(
            batcher,
            tokens={MUG: {ALICE: units(60), CAROL: units(40)}},
            lookup=FakeLookup(handles={ALICE: "alice", CAROL: "carol"}),
            price_source=FakePriceSource(error=ConnectionError("rpc down")),
        )

        result = await run_badges(config, deps)

        # fallback price 2.0 -> MUG minimum is 100 / 2
        assert result.basic_handles == ["alice"]
        assert deps.price_source.calls == 1
        assert deps.holder_source.token_calls == [(MUG, 50)]

    async def test_permanent_account_without_holdings(self, tmp_path, batcher):
        config = make_config(
            tmp_path,
            badges={"permanent_accounts": ["Founder"], "basic": {"tokens": [MU_TOKEN]}},
        )
        deps = collaborators(batcher, lookup=FakeLookup(wallets={"founder": CAROL}))

        result = await run_badges(config, deps)

        assert result.basic_handles == ["founder"]
        assert result.basic_addresses == [CAROL]

    async def test_permanent_lookups_share_one_paced_batch_run(self, tmp_path, batcher, sleep):
        founders = [f"founder{n}" for n in range(5)]
        config = make_config(
            tmp_path,
            badges={"permanent_accounts": founders, "basic": {"tokens": [MU_TOKEN]}},
        )
        lookup = FakeLookup(wallets={h: addr(10 + n) for n, h in enumerate(founders)})

        result = await run_badges(config, collaborators(batcher, lookup=lookup))

        assert result.basic_handles == founders
        assert result.basic_addresses == [addr(10 + n) for n in range(5)]
        assert lookup.handle_calls == founders
        # batch_size=2: three batches, paused twice
        assert sleep.calls == [0.5, 0.5]

    async def test_fixed_oracle_price(self, tmp_path, batcher, monkeypatch):
        monkeypatch.delenv("RPC_AVALANCHE", raising=False)
        dynamic_mug = {"symbol": "MUG", "address": MUG, "min_balance": 100, "dynamic": True}
        config = parse_config(
            {
                "project": {"name": "test"},
                "oracle": {"price": 4.0},
                "badges": {"basic": {"tokens": [dynamic_mug]}},
            },
            tmp_path,
        )
        deps = build_collaborators(config, needs_oracle=True)
        assert isinstance(deps.price_source, StaticPriceSource)

        deps.holder_source = FakeHolderSource(tokens={MUG: {ALICE: units(30), CAROL: units(20)}})
        deps.lookup = FakeLookup(handles={ALICE: "alice", CAROL: "carol"})
        deps.batcher = batcher
        result = await run_badges(config, deps)

        # 100 / 4.0 = 25 MUG, no RPC endpoint needed
        assert result.basic_handles == ["alice"]

    async def test_dynamic_minimum_without_price_source(self, tmp_path, batcher):
        dynamic_mu = dict(MU_TOKEN, dynamic=True)
        config = make_config(tmp_path, badges={"basic": {"tokens": [dynamic_mu]}})
        context = RunContext()
        with pytest.raises(ConfigError):
            await run_badges(config, collaborators(batcher), context)
        assert context.runs == 0

    async def test_missing_badges_section(self, tmp_path, batcher):
        config = make_config(tmp_path)
        with pytest.raises(ConfigError):
            await run_badges(config, collaborators(batcher))


# ── failures ────────────────────────────────────────────────────

class TestRunFailures:
    async def test_all_lookups_failing_is_a_retry_failure(self, tmp_path, batcher):
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        output = tmp_path / "output" / "badges.json"
        output.parent.mkdir()
        output.write_text('{"basic_handles": ["previous"]}')
        deps = collaborators(
            batcher,
            tokens={MU: {ALICE: units(150)}},
            lookup=FakeLookup(failing={ALICE}),
        )
        context = RunContext()

        with pytest.raises(RetryFailure):
            await run_badges(config, deps, context)

        assert output.read_text() == '{"basic_handles": ["previous"]}'
        assert deps.lookup.address_calls == [ALICE] * 3
        assert context.retry_pending
        assert context.consecutive_failures == 1
        assert not context.in_flight
        assert context.next_delay(3600, 900) == 900

    async def test_partial_lookup_failure_still_publishes(self, tmp_path, batcher):
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        deps = collaborators(
            batcher,
            tokens={MU: {ALICE: units(150), CAROL: units(150)}},
            lookup=FakeLookup(handles={ALICE: "alice"}, failing={CAROL}),
        )
        result = await run_badges(config, deps)
        assert result.basic_handles == ["alice"]

    async def test_fail_fast_exhaustion_becomes_retry_failure(self, tmp_path, sleep):
        batcher = RateLimitedBatcher(
            batch_size=2, batch_delay=0, max_retries=2, retry_base_delay=0.1,
            fail_fast=True, sleep=sleep,
        )
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        deps = collaborators(
            batcher,
            tokens={MU: {ALICE: units(150), CAROL: units(150)}},
            lookup=FakeLookup(handles={ALICE: "alice"}, failing={CAROL}),
        )
        context = RunContext()

        with pytest.raises(RetryFailure):
            await run_badges(config, deps, context)

        assert context.retry_pending
        assert not (tmp_path / "output" / "badges.json").exists()

    async def test_overlapping_run_is_rejected(self, tmp_path, batcher):
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        context = RunContext(in_flight=True)
        with pytest.raises(RunInProgressError):
            await run_badges(config, collaborators(batcher), context)

    async def test_success_clears_retry_state(self, tmp_path, batcher):
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        context = RunContext(retry_pending=True, consecutive_failures=2)
        await run_badges(config, collaborators(batcher), context)
        assert not context.retry_pending
        assert context.consecutive_failures == 0
        assert context.last_success is not None
        assert context.next_delay(3600, 900) == 3600


# ── leaderboard ─────────────────────────────────────────────────

class TestLeaderboardRun:
    async def test_standard_leaderboard(self, tmp_path, batcher):
        config = make_config(
            tmp_path,
            leaderboard={
                "strategy": "standard",
                "tokens": [{"symbol": "MU", "address": MU, "min_balance": 10, "weight": 2.0}],
                "excluded_accounts": ["whale"],
            },
        )
        deps = collaborators(
            batcher,
            tokens={MU: {ALICE: units(50), BOB_1: units(80), CAROL: units(900), BOB_2: units(5)}},
            lookup=FakeLookup(handles={ALICE: "alice", BOB_1: "bob", CAROL: "whale"}),
        )

        board = await run_leaderboard(config, deps)

        assert [(e.rank, e.handle, e.total_points) for e in board.entries] == [
            (1, "bob", 160.0),
            (2, "alice", 100.0),
        ]
        written = read_output(tmp_path, "standard_leaderboard.json")
        assert [e["handle"] for e in written["entries"]] == ["bob", "alice"]

    async def test_mu_leaderboard(self, tmp_path, batcher):
        config = make_config(
            tmp_path,
            leaderboard={
                "strategy": "mu",
                "max_entries": 1,
                "tokens": [{"symbol": "MUG", "address": MUG}],
                "nfts": [{"name": "Mu Pups", "address": PUPS}],
            },
        )
        deps = collaborators(
            batcher,
            tokens={MUG: {ALICE: units(60)}},
            nfts={PUPS: {BOB_1: 5, CAROL: 1}},
            lookup=FakeLookup(handles={ALICE: "alice", BOB_1: "bob", CAROL: "carol"}),
            price_source=FakePriceSource(price=2.0),
        )

        board = await run_leaderboard(config, deps)

        # alice: 2 * 60 MUG * 2.0 = 240, bob: 2 * 5 pups * 20.0 = 200, carol below 5 pups
        assert [(e.handle, e.total_points) for e in board.entries] == [("alice", 240.0)]
        assert (tmp_path / "output" / "mu_leaderboard.json").exists()

    async def test_write_false_skips_output(self, tmp_path, batcher):
        config = make_config(
            tmp_path,
            leaderboard={"tokens": [{"symbol": "MU", "address": MU, "min_balance": 1}]},
        )
        await run_leaderboard(config, collaborators(batcher), write=False)
        assert not (tmp_path / "output").exists()


# ── output and scheduling ───────────────────────────────────────

class TestOutput:
    def test_timestamp_format(self):
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", utc_timestamp())

    def test_atomic_write_replaces_file(self, tmp_path):
        path = tmp_path / "nested" / "out.json"
        write_json_atomic(path, {"a": 1})
        write_json_atomic(path, {"a": 2})
        assert json.loads(path.read_text()) == {"a": 2}
        assert [p.name for p in path.parent.iterdir()] == ["out.json"]


class TestScheduler:
    async def test_regular_interval_after_success(self, tmp_path, batcher):
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        context = RunContext()
        pacing = SleepRecorder()

        await run_scheduled(
            partial(run_badges, config, collaborators(batcher), context),
            context, interval_seconds=3600, retry_seconds=900, max_runs=3, sleep=pacing,
        )

        assert context.runs == 3
        assert pacing.calls == [3600, 3600]

    async def test_short_interval_after_retry_failure(self, tmp_path, batcher):
        config = make_config(tmp_path, badges={"basic": {"tokens": [MU_TOKEN]}})
        deps = collaborators(
            batcher, tokens={MU: {ALICE: units(150)}}, lookup=FakeLookup(failing={ALICE})
        )
        context = RunContext()
        pacing = SleepRecorder()

        await run_scheduled(
            partial(run_badges, config, deps, context),
            context, interval_seconds=3600, retry_seconds=900, max_runs=2, sleep=pacing,
        )

        assert pacing.calls == [900]
        assert context.consecutive_failures == 2

    async def test_config_errors_stop_the_loop(self, tmp_path, batcher):
        config = make_config(tmp_path)
        context = RunContext()
        with pytest.raises(ConfigError):
            await run_scheduled(
                partial(run_badges, config, collaborators(batcher), context),
                context, interval_seconds=1, retry_seconds=1, max_runs=2, sleep=SleepRecorder(),
            )
