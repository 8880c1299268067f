"""
Resolved settings for pipeline runs.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .database import DatabaseTarget
from .retry import RetryPolicy


class ConfigurationError(ValueError):
    """Raised when pipeline settings are missing or invalid."""
    pass


PIPELINE_KINDS = ('restore', 'backup')


@dataclass(frozen=True)
class PipelineSettings:
    """
    Everything one pipeline run needs, resolved once from app config.

    Passed explicitly to the orchestrator and the artifact store instead of
    being read from global state.
    """

    kind: str
    temp_dir: str
    bucket_name: str
    artifact_prefix: str
    artifact_suffix: str
    retry_policy: RetryPolicy
    source: Optional[DatabaseTarget] = None
    target: Optional[DatabaseTarget] = None
    target_schema: str = 'public'
    verify_connection: bool = True
    s3_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    command_timeout: float = 60.0
    restore_timeout: float = 1200.0
    dump_timeout: float = 1200.0
    max_output_bytes: int = 500 * 1024 * 1024

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'PipelineSettings':
        """
        Build settings from a Flask config (or any mapping).

        Raises:
            ConfigurationError: If a required value is missing or malformed
        """
        kind = (cfg.get('PIPELINE_KIND') or 'restore').lower()
        if kind not in PIPELINE_KINDS:
            raise ConfigurationError(f"PIPELINE_KIND must be one of {PIPELINE_KINDS}, got {kind!r}")

        bucket = cfg.get('S3_BUCKET')
        if not bucket:
            raise ConfigurationError("S3_BUCKET is not configured")

        prefix = cfg.get('ARTIFACT_PREFIX', 'backup-')
        suffix = cfg.get('ARTIFACT_SUFFIX', '.dump')
        if not prefix or not suffix:
            raise ConfigurationError("ARTIFACT_PREFIX and ARTIFACT_SUFFIX must not be empty")

        try:
            retry_policy = RetryPolicy(
                max_attempts=int(cfg.get('RETRY_MAX_ATTEMPTS', 3)),
                initial_delay=float(cfg.get('RETRY_INITIAL_DELAY', 5)),
                backoff_multiplier=float(cfg.get('RETRY_BACKOFF_MULTIPLIER', 2))
            )
            command_timeout = float(cfg.get('COMMAND_TIMEOUT', 60))
            restore_timeout = float(cfg.get('RESTORE_TIMEOUT', 1200))
            dump_timeout = float(cfg.get('DUMP_TIMEOUT', 1200))
            max_output_bytes = int(cfg.get('MAX_OUTPUT_BYTES', 500 * 1024 * 1024))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid retry or timeout setting: {e}") from e

        source = target = None
        url_key = 'SOURCE_DATABASE_URL' if kind == 'backup' else 'TARGET_DATABASE_URL'
        url = cfg.get(url_key)
        if not url:
            raise ConfigurationError(f"{url_key} is required for {kind} runs")
        try:
            parsed = DatabaseTarget.from_url(url, connect_timeout=max(1, int(command_timeout)))
        except ValueError as e:
            raise ConfigurationError(f"{url_key}: {e}") from e
        if kind == 'backup':
            source = parsed
        else:
            target = parsed

        return cls(
            kind=kind,
            temp_dir=cfg.get('TEMP_DIR') or '/data/temp',
            bucket_name=bucket,
            artifact_prefix=prefix,
            artifact_suffix=suffix,
            retry_policy=retry_policy,
            source=source,
            target=target,
            target_schema=cfg.get('TARGET_SCHEMA') or 'public',
            verify_connection=bool(cfg.get('VERIFY_CONNECTION', True)),
            s3_region=cfg.get('S3_REGION'),
            s3_endpoint_url=cfg.get('S3_ENDPOINT_URL'),
            aws_access_key_id=cfg.get('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=cfg.get('AWS_SECRET_ACCESS_KEY'),
            command_timeout=command_timeout,
            restore_timeout=restore_timeout,
            dump_timeout=dump_timeout,
            max_output_bytes=max_output_bytes
        )
