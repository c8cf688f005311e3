from typing import Annotated
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ORIGIN: str = "http://localhost:3000"

    # relying party / display
    RP_ID: str = "localhost"
    RP_NAME: str = "Pension Verification"

    # enforce origin↔rp_id relationship at config load time
    STRICT_RP_BINDING: bool = True

    # ceremony parameters
    CHALLENGE_TTL_SECONDS: int = 300
    CEREMONY_TIMEOUT_MS: int = 60_000
    ALLOWED_ALGORITHMS: Annotated[list[int], NoDecode] = [-7, -257]  # ES256, RS256; env as "-7,-257"

    # shared services
    REDIS_URL: str = "redis://localhost:6379/0"
    DATABASE_URL: str = "sqlite:///data/reverify.db"

    # caller identity tokens (raw 32-byte Ed25519 seed, base64)
    SERVER_ED25519_SK_B64: str = ""
    IDENTITY_TOKEN_TTL_SECONDS: int = 86_400

    # verification policy
    SIMILARITY_THRESHOLD: float = 80.0
    CREDENTIAL_REVERIFY_MONTHS: int = 3
    SIMILARITY_REVERIFY_MONTHS: int = 36
    REVIEW_REVERIFY_MONTHS: int = 36

    # image storage / face comparison
    AWS_REGION: str = "us-east-1"
    IMAGE_BUCKET: str = "pension-verification-images"

    AUDIT_DIR: str = "audit"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN must be the absolute http(s) origin the browser runs the
        ceremony on; it is compared verbatim with clientDataJSON.origin.

        Normalization:
          - strip whitespace
          - strip trailing slash
          - require http/https
          - require hostname
          - lowercase hostname

        Note: we preserve an optional port if present.
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: str) -> str:
        """
        RP_ID must be domain-only (WebAuthn rpId semantics).
        Accepts accidental full URLs and strips scheme/path/trailing slashes.
        """
        v = (v or "").strip()

        if "://" in v:
            p = urlparse(v)
            if p.hostname:
                v = p.hostname

        v = v.strip().rstrip("/").lower()

        if not v:
            raise ValueError("RP_ID cannot be empty")

        if "/" in v or ":" in v:
            # ":" would indicate a port; WebAuthn rpId must not include it
            raise ValueError("RP_ID must be a bare domain (no scheme, no port, no path)")

        return v

    @field_validator("STRICT_RP_BINDING", "LOG_JSON", mode="before")
    @classmethod
    def normalize_flag(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return True

    @field_validator("RP_NAME")
    @classmethod
    def normalize_rp_name(cls, v: str) -> str:
        return (v or "").strip() or "Pension Verification"

    @field_validator("ALLOWED_ALGORITHMS", mode="before")
    @classmethod
    def normalize_algorithms(cls, v):
        # ALLOWED_ALGORITHMS="-7,-257"
        if isinstance(v, str):
            parts = [int(p.strip()) for p in v.split(",") if p.strip()]
            return parts or [-7, -257]
        return v

    @field_validator("SIMILARITY_THRESHOLD")
    @classmethod
    def check_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 100.0:
            raise ValueError("SIMILARITY_THRESHOLD must be within [0, 100]")
        return v

    @model_validator(mode="after")
    def check_rp_binding(self) -> "Settings":
        # WebAuthn expectation: origin host must equal rp_id or be a subdomain of it.
        if self.STRICT_RP_BINDING:
            origin_host = urlparse(self.ORIGIN).hostname or ""
            rp_id = self.RP_ID
            if not (origin_host == rp_id or origin_host.endswith("." + rp_id)):
                raise ValueError(
                    f"ORIGIN host '{origin_host}' does not match RP_ID '{rp_id}'. "
                    f"Set RP_ID to the ORIGIN hostname or a parent domain of it."
                )
        return self


settings = Settings()
