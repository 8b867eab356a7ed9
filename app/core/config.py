# app/core/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Paywall Gateway"
    API_PREFIX: str = "/api"

    # --- x402 payment scheme (exactly one scheme/network pair per deployment) ---
    X402_ENABLED: bool = True
    X402_SCHEME: str = "exact"
    X402_NETWORK: str = "solana-devnet" # "solana" for mainnet
    X402_ASSET: str = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU" # Devnet USDC mint
    X402_ASSET_SYMBOL: str = "USDC"
    X402_ASSET_DECIMALS: int = 6
    X402_PROTECTED_PATH_PREFIX: str = "/post/"

    # --- Ledger (Solana JSON-RPC) ---
    X402_RPC_URL: AnyHttpUrl = "https://api.devnet.solana.com"
    X402_RPC_COMMITMENT: str = "confirmed"
    X402_RPC_TIMEOUT_SECONDS: float = 10.0

    # --- Facilitator (verify/settle collaborator) ---
    X402_FACILITATOR_URL: Optional[AnyHttpUrl] = None
    X402_VERIFY_VIA_FACILITATOR: bool = False
    X402_FACILITATOR_TIMEOUT_SECONDS: float = 10.0

    # --- Replay protection ---
    X402_REPLAY_TTL_SECONDS: int = 24 * 60 * 60
    X402_REPLAY_SWEEP_INTERVAL_SECONDS: int = 60 * 60

    # --- Session cookie ---
    X402_SESSION_COOKIE_PREFIX: str = "post_payment_verified"
    X402_SESSION_MAX_AGE_SECONDS: int = 24 * 60 * 60
    X402_SESSION_COOKIE_SECURE: bool = True
    # Accept unknown session tokens that merely look like a signature.
    # Only meant for stateless multi-instance deployments without a shared cache.
    X402_TRUST_TOKEN_FORMAT: bool = False

    # --- Protected resource lookup ---
    RESOURCE_API_URL: Optional[AnyHttpUrl] = None
    RESOURCE_LOOKUP_TIMEOUT_SECONDS: float = 10.0

    # --- Audit log ---
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
