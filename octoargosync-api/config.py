import os
from typing import Callable, Optional


VERSIONERS = {"redeployment", "unique"}


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("OCTOARGOSYNC_SSM_PREFIX", "")
        self.app_env = os.getenv("APP_ENV", "")

        self.octopus_server = self._get("octopus/server", "OCTOPUS_SERVER", "", str)
        self.octopus_api_key = self._resolve_secret(self._get("octopus/api_key", "OCTOPUS_API_KEY", "", str))
        self.octopus_space_id = self._get("octopus/space_id", "OCTOPUS_SPACE_ID", "", str)

        self.argocd_server = self._get("argocd/server", "ARGOCD_SERVER", "", str)
        self.argocd_token = self._resolve_secret(self._get("argocd/token", "ARGOCD_TOKEN", "", str))
        self.argocd_insecure = self._as_bool(self._get("argocd/insecure", "ARGOCD_INSECURE", "true", str))

        self.cache_ttl_seconds = self._get("cache_ttl_seconds", "OCTOARGOSYNC_CACHE_TTL_SECONDS", 300, int)
        self.cache_max_entries = self._get("cache_max_entries", "OCTOARGOSYNC_CACHE_MAX_ENTRIES", 1024, int)
        self.request_timeout_seconds = self._get(
            "request_timeout_seconds", "OCTOARGOSYNC_REQUEST_TIMEOUT_SECONDS", 30.0, float
        )
        versioner = str(self._get("versioner", "OCTOARGOSYNC_VERSIONER", "redeployment", str)).strip().lower()
        self.versioner = versioner if versioner in VERSIONERS else "redeployment"

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            import boto3
            from botocore.exceptions import ClientError
        except Exception:
            return None
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except ClientError:
            return None

    def _resolve_secret(self, value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str):
            return value
        if not value.startswith("arn:aws:secretsmanager:"):
            return value
        try:
            import boto3
        except Exception:
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
            return response.get("SecretString", value)
        except Exception:
            return value


SETTINGS = Settings()
