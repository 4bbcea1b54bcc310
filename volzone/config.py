"""VolZone — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import json
import logging
import os
import pathlib
from dataclasses import dataclass, fields

from dotenv import load_dotenv

from volzone.models.instrument_config import InstrumentConfig

logger = logging.getLogger("volzone")

_REQUIRED_VARS = [
    "BYBIT_API_KEY",
    "BYBIT_API_SECRET",
]

_VOLZONE_JSON = pathlib.Path(__file__).resolve().parent.parent / "volzone.json"


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    bybit_api_key: str
    bybit_api_secret: str
    bybit_testnet: bool
    category: str  # Bybit product category: "linear", "inverse" or "spot"
    symbols: tuple[str, ...]
    db_path: str
    log_level: str
    evaluation_timeout_s: float
    orderflow_window_ms: int
    min_signal_confidence: float
    recv_window_ms: int = 5000

    @property
    def bybit_base_url(self) -> str:
        """Return the Bybit v5 API base URL for mainnet or testnet."""
        if self.bybit_testnet:
            return "https://api-testnet.bybit.com"
        return "https://api.bybit.com"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    symbols = tuple(
        s.strip().upper()
        for s in os.environ.get("SYMBOLS", "BTCUSDT").split(",")
        if s.strip()
    )

    return Config(
        bybit_api_key=os.environ["BYBIT_API_KEY"],
        bybit_api_secret=os.environ["BYBIT_API_SECRET"],
        bybit_testnet=_env_bool("BYBIT_TESTNET"),
        category=os.environ.get("BYBIT_CATEGORY", "linear"),
        symbols=symbols,
        db_path=os.environ.get("DB_PATH", "data/volzone.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        evaluation_timeout_s=float(os.environ.get("EVALUATION_TIMEOUT_S", "12")),
        orderflow_window_ms=int(os.environ.get("ORDERFLOW_WINDOW_MS", "8000")),
        min_signal_confidence=float(os.environ.get("MIN_SIGNAL_CONFIDENCE", "0.4")),
    )


def load_instruments() -> list[InstrumentConfig]:
    """Load per-instrument settings from ``volzone.json``.

    Falls back to one default ``InstrumentConfig`` per symbol in the
    ``SYMBOLS`` environment variable when the file is missing or lists no
    instruments.  Unknown keys in the file are ignored with a warning.
    """
    if _VOLZONE_JSON.is_file():
        data = json.loads(_VOLZONE_JSON.read_text(encoding="utf-8"))
        known = {f.name for f in fields(InstrumentConfig)}
        instruments: list[InstrumentConfig] = []
        for entry in data.get("instruments", []):
            unknown = set(entry) - known
            if unknown:
                logger.warning(
                    "Ignoring unknown instrument keys %s in %s",
                    sorted(unknown), _VOLZONE_JSON,
                )
            instruments.append(
                InstrumentConfig(**{k: v for k, v in entry.items() if k in known})
            )
        if instruments:
            return instruments

    symbols = [
        s.strip().upper()
        for s in os.environ.get("SYMBOLS", "BTCUSDT").split(",")
        if s.strip()
    ]
    return [InstrumentConfig(name=s.lower(), symbol=s) for s in symbols]
