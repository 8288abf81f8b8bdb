"""
HolderRank Configuration
═══════════════════════════════════════════════════════════════════════════════
Loads config.toml into typed run settings. Secrets and endpoints come from the
environment (.env is loaded on import).

Environment Variables (in .env file):
    RPC_AVALANCHE=https://api.avax.network/ext/bc/C/rpc
    SOCIAL_API_URL=https://api.arena.trade/user_info
    SOCIAL_HANDLE_API_URL=https://api.starsarena.com/user/handle
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import toml
from dotenv import load_dotenv

from batcher import (
    BATCH_DELAY,
    BATCH_SIZE,
    MAX_RETRIES,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
)
from models import (
    NftRequirement,
    RequirementSet,
    TokenRequirement,
    normalize_address,
    normalize_handle,
)
from oracle import DEFAULT_ORACLE_ADDRESS, FALLBACK_PRICE, PRICE_DECIMALS
from strategies import DEFAULT_BASE_UNITS, STRATEGIES, has_mu_multiplier

# Load environment variables from .env file
load_dotenv()


class ConfigError(ValueError):
    """The configuration cannot describe a valid run."""


# ═══════════════════════════════════════════════════════════════════════════════
# TYPED SETTINGS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class ProjectConfig:
    name: str
    chain: str = "avalanche"
    wallet_mapping_file: Path | None = None
    raw_folder: Path = Path("raw")
    output_folder: Path = Path("output")


@dataclass
class RequestsConfig:
    batch_size: int = BATCH_SIZE
    batch_delay_seconds: float = BATCH_DELAY
    max_retries: int = MAX_RETRIES
    retry_base_delay_seconds: float = RETRY_BASE_DELAY
    retry_max_delay_seconds: float = RETRY_MAX_DELAY
    fail_fast: bool = False
    backfill_balances: bool = False


@dataclass
class OracleConfig:
    address: str | None = DEFAULT_ORACLE_ADDRESS
    fallback_price: float = FALLBACK_PRICE
    decimals: int = PRICE_DECIMALS
    price: float | None = None


@dataclass
class BadgeConfig:
    basic: RequirementSet
    upgraded: RequirementSet | None = None
    sum_of_balances: bool = False
    exclude_basic_for_upgraded: bool = False
    permanent_accounts: list[str] = field(default_factory=list)
    excluded_accounts: list[str] = field(default_factory=list)
    output_file: str = "badges.json"

    @property
    def needs_oracle(self) -> bool:
        tiers = [self.basic] + ([self.upgraded] if self.upgraded else [])
        return any(r.dynamic for tier in tiers for r in tier.tokens + tier.nfts)


@dataclass
class LeaderboardConfig:
    strategy: str
    requirements: RequirementSet
    sum_of_balances: bool = False
    max_entries: int = 0
    excluded_accounts: list[str] = field(default_factory=list)
    base_units: float = DEFAULT_BASE_UNITS
    output_file: str | None = None

    @property
    def needs_oracle(self) -> bool:
        return STRATEGIES[self.strategy].needs_oracle

    @property
    def output_file_name(self) -> str:
        return self.output_file or STRATEGIES[self.strategy].output_file_name


@dataclass
class RunConfig:
    project: ProjectConfig
    requests: RequestsConfig = field(default_factory=RequestsConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    badges: BadgeConfig | None = None
    leaderboard: LeaderboardConfig | None = None

    def require_badges(self) -> BadgeConfig:
        if self.badges is None:
            raise ConfigError("Missing [badges.basic] requirements for a badge run")
        return self.badges

    def require_leaderboard(self) -> LeaderboardConfig:
        if self.leaderboard is None:
            raise ConfigError("Missing [leaderboard] section for a leaderboard run")
        return self.leaderboard


# ═══════════════════════════════════════════════════════════════════════════════
# LOADING
# ═══════════════════════════════════════════════════════════════════════════════


def load_config(config_path: str) -> dict:
    """Load configuration from TOML file."""
    with open(config_path, "r") as f:
        return toml.load(f)


def get_rpc_endpoint(chain_name: str) -> str:
    """Get RPC endpoint from environment variable."""
    env_var = f"RPC_{chain_name.upper()}"
    endpoint = os.getenv(env_var)
    if not endpoint:
        raise ConfigError(f"Missing environment variable: {env_var}")
    return endpoint


def _number(table: dict, key: str, default, kind=float):
    value = table.get(key, default)
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}") from None


def _parse_token(entry: dict, where: str) -> TokenRequirement:
    address = normalize_address(entry.get("address", ""))
    symbol = entry.get("symbol")
    if not address or not symbol:
        raise ConfigError(f"{where}: token entries need 'symbol' and 'address'")
    dynamic = bool(entry.get("dynamic", False))
    if dynamic and not has_mu_multiplier(symbol):
        raise ConfigError(f"{where}: {symbol} has no price multiplier, so it cannot be dynamic")
    return TokenRequirement(
        address=address,
        symbol=symbol,
        min_balance=_number(entry, "min_balance", 0.0),
        decimals=_number(entry, "decimals", 18, int),
        dynamic=dynamic,
        weight=_number(entry, "weight", 0.0),
    )


def _parse_nft(entry: dict, where: str) -> NftRequirement:
    address = normalize_address(entry.get("address", ""))
    name = entry.get("name")
    if not address or not name:
        raise ConfigError(f"{where}: NFT entries need 'name' and 'address'")
    dynamic = bool(entry.get("dynamic", False))
    if dynamic and not has_mu_multiplier(name):
        raise ConfigError(f"{where}: {name} has no price multiplier, so it cannot be dynamic")
    return NftRequirement(
        address=address,
        name=name,
        min_balance=_number(entry, "min_balance", 1.0),
        dynamic=dynamic,
        points_per_token=_number(entry, "points_per_token", 0.0),
    )


def parse_requirements(table: dict, where: str) -> RequirementSet:
    return RequirementSet(
        tokens=tuple(_parse_token(t, where) for t in table.get("tokens", [])),
        nfts=tuple(_parse_nft(n, where) for n in table.get("nfts", [])),
    )


def _handles(values) -> list[str]:
    return [normalize_handle(h) for h in values or [] if normalize_handle(h)]


def parse_config(raw: dict, base_dir: Path | None = None) -> RunConfig:
    """Validate a loaded TOML dict into a RunConfig."""
    base_dir = base_dir or Path(".")

    project_table = raw.get("project", {})
    name = project_table.get("name")
    if not name:
        raise ConfigError("Missing [project].name")
    mapping_file = project_table.get("wallet_mapping_file")
    project = ProjectConfig(
        name=name,
        chain=project_table.get("chain", "avalanche"),
        wallet_mapping_file=base_dir / mapping_file if mapping_file else None,
        raw_folder=base_dir / project_table.get("raw_folder", "raw"),
        output_folder=base_dir / project_table.get("output_folder", "output"),
    )

    requests_table = raw.get("requests", {})
    requests_config = RequestsConfig(
        batch_size=_number(requests_table, "batch_size", BATCH_SIZE, int),
        batch_delay_seconds=_number(requests_table, "batch_delay_seconds", BATCH_DELAY),
        max_retries=_number(requests_table, "max_retries", MAX_RETRIES, int),
        retry_base_delay_seconds=_number(
            requests_table, "retry_base_delay_seconds", RETRY_BASE_DELAY
        ),
        retry_max_delay_seconds=_number(
            requests_table, "retry_max_delay_seconds", RETRY_MAX_DELAY
        ),
        fail_fast=bool(requests_table.get("fail_fast", False)),
        backfill_balances=bool(requests_table.get("backfill_balances", False)),
    )
    if requests_config.batch_size < 1 or requests_config.max_retries < 1:
        raise ConfigError("[requests] batch_size and max_retries must be at least 1")

    oracle_table = raw.get("oracle", {})
    oracle = OracleConfig(
        address=oracle_table.get("address", DEFAULT_ORACLE_ADDRESS) or None,
        fallback_price=_number(oracle_table, "fallback_price", FALLBACK_PRICE),
        decimals=_number(oracle_table, "decimals", PRICE_DECIMALS, int),
        price=_number(oracle_table, "price", None) if "price" in oracle_table else None,
    )
    if oracle.price is not None and not oracle.price > 0:
        raise ConfigError("[oracle].price must be positive")

    badges = None
    badges_table = raw.get("badges")
    if badges_table is not None:
        if not badges_table.get("basic"):
            raise ConfigError("Missing [badges.basic] requirements")
        basic = parse_requirements(badges_table["basic"], "[badges.basic]")
        if basic.is_empty():
            raise ConfigError("[badges.basic] must list at least one token or NFT")
        upgraded = None
        if badges_table.get("upgraded"):
            upgraded = parse_requirements(badges_table["upgraded"], "[badges.upgraded]")
        badges = BadgeConfig(
            basic=basic,
            upgraded=upgraded,
            sum_of_balances=bool(badges_table.get("sum_of_balances", False)),
            exclude_basic_for_upgraded=bool(
                badges_table.get("exclude_basic_for_upgraded", False)
            ),
            permanent_accounts=_handles(badges_table.get("permanent_accounts")),
            excluded_accounts=_handles(badges_table.get("excluded_accounts")),
            output_file=badges_table.get("output_file", "badges.json"),
        )

    leaderboard = None
    leaderboard_table = raw.get("leaderboard")
    if leaderboard_table is not None:
        strategy = str(leaderboard_table.get("strategy", "standard")).strip().lower()
        if strategy not in STRATEGIES:
            raise ConfigError(f"Unknown leaderboard strategy: {strategy!r}")
        requirements = parse_requirements(leaderboard_table, "[leaderboard]")
        if requirements.is_empty():
            raise ConfigError("[leaderboard] must list at least one token or NFT")
        leaderboard = LeaderboardConfig(
            strategy=strategy,
            requirements=requirements,
            sum_of_balances=bool(leaderboard_table.get("sum_of_balances", False)),
            max_entries=_number(leaderboard_table, "max_entries", 0, int),
            excluded_accounts=_handles(leaderboard_table.get("excluded_accounts")),
            base_units=_number(leaderboard_table, "base_units", DEFAULT_BASE_UNITS),
            output_file=leaderboard_table.get("output_file"),
        )

    return RunConfig(
        project=project,
        requests=requests_config,
        oracle=oracle,
        badges=badges,
        leaderboard=leaderboard,
    )


def load_run_config(config_path: str | Path) -> RunConfig:
    """Load and validate config.toml. Relative paths resolve against its folder."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        raw = load_config(config_path)
    except toml.TomlDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e
    return parse_config(raw, config_path.parent)
