"""Application configuration and settings for the FX trading core"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict
from dotenv import load_dotenv
from cryptography.fernet import Fernet, InvalidToken

from src.data.instruments import SWAP_RATES

# Load environment variables from .env file
load_dotenv('.env')

logger = logging.getLogger(__name__)


@dataclass
class MarketDataConfig:
    """Upstream quote provider and market data pipeline configuration"""
    base_url: str = "https://trade.onetickmarkets.com/exchange/backend/api/common/Oandaprice"
    provider_name: str = "onetickmarkets"
    api_token: str = ""
    cache_freshness_ms: float = 500
    max_requests_per_second: int = 2
    batch_delay_ms: float = 100
    request_timeout_seconds: float = 15.0
    streaming_interval_seconds: float = 2.0
    streaming_jitter_seconds: float = 0.0
    last_known_max_age_ms: float = 60000


@dataclass
class TradingConfig:
    """Margin, lot and risk limits for the trading engine"""
    contract_size: float = 100000  # units per standard lot
    commission_rate: float = 0.0007  # 0.07% of trade value
    min_lot_size: float = 0.01
    max_lot_size: float = 100
    max_leverage: int = 1000
    min_margin_level: float = 50  # margin call warning level (%)
    stop_out_level: float = 20  # forced liquidation level (%)
    max_risk_per_trade: float = 0.02  # 2% of balance
    min_stop_distance_pct: float = 0.001  # 0.1% of price


@dataclass
class SwapConfig:
    """Overnight financing configuration"""
    swap_time: str = "21:00"  # UTC rollover
    check_interval_seconds: float = 60.0
    rates: Dict[str, Dict[str, float]] = field(default_factory=lambda: {symbol: dict(rates) for symbol, rates in SWAP_RATES.items()})

    @property
    def rollover_hour(self) -> int:
        return int(self.swap_time.split(':')[0])

    @property
    def rollover_minute(self) -> int:
        return int(self.swap_time.split(':')[1])


@dataclass
class DatabaseConfig:
    """Database configuration"""
    path: Path

    def ensure_directory(self) -> None:
        """Ensure database directory exists"""
        self.path.parent.mkdir(parents=True, exist_ok=True)


class Settings:
    """Main application settings"""

    def __init__(self):
        """Initialize settings from environment variables"""
        self.market_data = MarketDataConfig(
            base_url=os.getenv('MARKET_DATA_BASE_URL', MarketDataConfig.base_url),
            provider_name=os.getenv('MARKET_DATA_PROVIDER', MarketDataConfig.provider_name),
            api_token=os.getenv('MARKET_DATA_API_TOKEN', ''),
            cache_freshness_ms=float(os.getenv('CACHE_FRESHNESS_MS', '500')),
            max_requests_per_second=int(os.getenv('MAX_REQUESTS_PER_SECOND', '2')),
            batch_delay_ms=float(os.getenv('BATCH_DELAY_MS', '100')),
            request_timeout_seconds=float(os.getenv('REQUEST_TIMEOUT_SECONDS', '15')),
            streaming_interval_seconds=float(os.getenv('STREAMING_INTERVAL_SECONDS', '2')),
            streaming_jitter_seconds=float(os.getenv('STREAMING_JITTER_SECONDS', '0')),
            last_known_max_age_ms=float(os.getenv('LAST_KNOWN_MAX_AGE_MS', '60000'))
        )

        self.trading = TradingConfig(
            commission_rate=float(os.getenv('COMMISSION_RATE', '0.0007')),
            min_lot_size=float(os.getenv('MIN_LOT_SIZE', '0.01')),
            max_lot_size=float(os.getenv('MAX_LOT_SIZE', '100')),
            max_leverage=int(os.getenv('MAX_LEVERAGE', '1000')),
            min_margin_level=float(os.getenv('MIN_MARGIN_LEVEL', '50')),
            stop_out_level=float(os.getenv('STOP_OUT_LEVEL', '20')),
            max_risk_per_trade=float(os.getenv('MAX_RISK_PER_TRADE', '0.02'))
        )

        self.swap = SwapConfig(
            swap_time=os.getenv('SWAP_TIME', '21:00')
        )

        self.database = DatabaseConfig(
            path=Path(os.getenv('DATABASE_PATH', 'data/database/trading.db'))
        )

        # Application settings
        self.log_level = os.getenv('LOG_LEVEL', 'INFO')
        self.log_dir = os.getenv('LOG_DIR', 'logs')
        self.credentials_dir = Path(os.getenv('CREDENTIALS_DIR', 'data/credentials'))
        self.encryption_key_path = Path(os.getenv('ENCRYPTION_KEY_PATH', 'data/.encryption_key'))

        self._encryption_key: Optional[bytes] = None

    def _get_or_create_encryption_key(self) -> bytes:
        """Get or create encryption key for credential storage"""
        if self._encryption_key is not None:
            return self._encryption_key

        key_file = self.encryption_key_path

        if key_file.exists():
            with open(key_file, 'rb') as f:
                self._encryption_key = f.read()
        else:
            key = Fernet.generate_key()
            key_file.parent.mkdir(parents=True, exist_ok=True)
            with open(key_file, 'wb') as f:
                f.write(key)
            # Owner only
            os.chmod(key_file, 0o600)
            self._encryption_key = key

        return self._encryption_key

    def encrypt_credential(self, credential: str) -> bytes:
        """
        Encrypt a credential string.

        Args:
            credential: Plain text credential

        Returns:
            Encrypted credential bytes
        """
        fernet = Fernet(self._get_or_create_encryption_key())
        return fernet.encrypt(credential.encode())

    def decrypt_credential(self, encrypted: bytes) -> str:
        """
        Decrypt a credential.

        Args:
            encrypted: Encrypted credential bytes

        Returns:
            Plain text credential
        """
        fernet = Fernet(self._get_or_create_encryption_key())
        return fernet.decrypt(encrypted).decode()

    @property
    def api_token_file(self) -> Path:
        """Encrypted quote provider token on disk"""
        return self.credentials_dir / 'market_data_token.enc'

    def store_api_token(self, token: str) -> bool:
        """
        Encrypt the quote provider token to disk, readable by the owner only.

        Args:
            token: Provider API token

        Returns:
            True if the token was written
        """
        if not token:
            raise ValueError("API token cannot be empty")

        try:
            self.credentials_dir.mkdir(parents=True, exist_ok=True)
            self.api_token_file.write_bytes(self.encrypt_credential(token))
            os.chmod(self.api_token_file, 0o600)
            return True
        except OSError as e:
            logger.error(f"Error storing API token: {e}")
            return False

    def load_api_token(self) -> str:
        """Stored token, or an empty string when none is stored or it cannot be decrypted."""
        if not self.api_token_file.exists():
            return ''

        try:
            return self.decrypt_credential(self.api_token_file.read_bytes())
        except (OSError, InvalidToken) as e:
            logger.error(f"Error loading API token from {self.api_token_file}: {e}")
            return ''

    def delete_api_token(self) -> bool:
        """
        Remove the stored token.

        Returns:
            True if a stored token was removed
        """
        try:
            self.api_token_file.unlink()
            return True
        except FileNotFoundError:
            return False

    def resolve_api_token(self) -> str:
        """
        Resolve the quote provider token.

        The environment wins; the encrypted token file is used otherwise.
        """
        return self.market_data.api_token or self.load_api_token()

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors = []

        md = self.market_data
        if not md.base_url.startswith(('http://', 'https://')):
            errors.append("MARKET_DATA_BASE_URL must be an http(s) URL")
        if md.cache_freshness_ms <= 0:
            errors.append("CACHE_FRESHNESS_MS must be positive")
        if md.max_requests_per_second <= 0:
            errors.append("MAX_REQUESTS_PER_SECOND must be positive")
        if md.request_timeout_seconds <= 0:
            errors.append("REQUEST_TIMEOUT_SECONDS must be positive")
        if md.streaming_interval_seconds <= 0:
            errors.append("STREAMING_INTERVAL_SECONDS must be positive")

        tr = self.trading
        if not 0 <= tr.commission_rate < 1:
            errors.append("COMMISSION_RATE must be between 0 and 1")
        if not 0 < tr.min_lot_size <= tr.max_lot_size:
            errors.append("MIN_LOT_SIZE must be positive and not above MAX_LOT_SIZE")
        if tr.max_leverage < 1:
            errors.append("MAX_LEVERAGE must be at least 1")
        if not 0 < tr.stop_out_level < tr.min_margin_level:
            errors.append("STOP_OUT_LEVEL must be positive and below MIN_MARGIN_LEVEL")
        if not 0 < tr.max_risk_per_trade <= 1:
            errors.append("MAX_RISK_PER_TRADE must be between 0 and 1")

        try:
            hour, minute = self.swap.rollover_hour, self.swap.rollover_minute
            if not (0 <= hour < 24 and 0 <= minute < 60):
                errors.append("SWAP_TIME must be a valid HH:MM time")
        except (ValueError, IndexError):
            errors.append("SWAP_TIME must be a valid HH:MM time")

        return len(errors) == 0, errors


# Global settings instance
settings = Settings()
