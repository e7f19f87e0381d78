"""Configuration settings and models for git sync and S3 backup."""

import os
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, Literal, Optional, Union
from urllib.parse import quote

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from ..exceptions import ConfigurationError


class AuthMethod(str, Enum):
    """Supported git authentication methods."""
    TOKEN = "token"
    HTTPS = "https"
    SSH = "ssh"


class GitProvider(str, Enum):
    """Hosting providers the repository provisioner can talk to."""
    GITHUB = "github"
    GITLAB = "gitlab"


class RepoVisibility(str, Enum):
    """Visibility of an auto-created repository."""
    PRIVATE = "private"
    PUBLIC = "public"


class ProxyType(str, Enum):
    """Upstream proxy schemes."""
    HTTP = "http"
    HTTPS = "https"
    SOCKS5 = "socks5"


class TokenAuth(BaseModel):
    """Personal access token over HTTPS."""
    method: Literal["token"] = "token"
    token: SecretStr


class HttpsAuth(BaseModel):
    """Username and password over HTTPS."""
    method: Literal["https"] = "https"
    username: str
    password: SecretStr


class SshAuth(BaseModel):
    """SSH transport, optionally with an explicit private key."""
    method: Literal["ssh"] = "ssh"
    key_path: Optional[Path] = None


GitAuth = Annotated[Union[TokenAuth, HttpsAuth, SshAuth], Field(discriminator="method")]


class ProxyConfig(BaseModel):
    """Outbound proxy used by git, the provisioner and the probe."""
    enabled: bool = False
    type: ProxyType = ProxyType.HTTP
    host: str = ""
    port: int = 8080
    username: Optional[str] = None
    password: Optional[SecretStr] = None

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 0 < v < 65536:
            raise ValueError('port must be between 1 and 65535')
        return v

    @property
    def url(self) -> str:
        """Proxy URL as ``scheme://[user:pass@]host:port``."""
        url = f"{self.type.value}://"
        if self.username and self.password:
            url += f"{quote(self.username, safe='')}:{quote(self.password.get_secret_value(), safe='')}@"
        return f"{url}{self.host}:{self.port}"

    @property
    def redacted_url(self) -> str:
        """Proxy URL safe for log lines."""
        auth = "***@" if self.username else ""
        return f"{self.type.value}://{auth}{self.host}:{self.port}"

    def as_requests_proxies(self) -> Optional[Dict[str, str]]:
        """Proxy mapping for ``requests`` or None when disabled."""
        if not self.enabled:
            return None
        return {'http': self.url, 'https': self.url}


class GitConfig(BaseModel):
    """Git sync configuration."""
    enabled: bool = True
    remote_url: str = ""
    branch: str = "main"
    auth: GitAuth
    api_token: Optional[SecretStr] = None  # REST calls and token fallback
    proxy: Optional[ProxyConfig] = None
    auto_sync: bool = False
    sync_interval: int = 30  # minutes
    auto_create_repo: bool = False
    repo_name: str = "personal-okr-data"
    repo_description: str = "Personal OKR Manager Data Repository"
    repo_visibility: RepoVisibility = RepoVisibility.PRIVATE
    git_provider: GitProvider = GitProvider.GITHUB
    local_path: Optional[Path] = None

    @field_validator('sync_interval')
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError('sync_interval must be a positive number of minutes')
        return v

    @model_validator(mode='after')
    def validate_remote(self):
        if not self.remote_url and not self.auto_create_repo:
            raise ValueError('remote_url is required unless auto_create_repo is enabled')
        return self

    @property
    def token(self) -> Optional[str]:
        """Token usable for REST calls, from the token auth or ``api_token``."""
        if isinstance(self.auth, TokenAuth):
            return self.auth.token.get_secret_value()
        if self.api_token is not None:
            return self.api_token.get_secret_value()
        return None

    @property
    def auth_method(self) -> AuthMethod:
        return AuthMethod(self.auth.method)

    @property
    def proxy_enabled(self) -> bool:
        return self.proxy is not None and self.proxy.enabled


class BackupTypes(BaseModel):
    """Which artifacts a backup run produces."""
    database: bool = True
    json_export: bool = Field(default=True, alias="json")

    model_config = {"populate_by_name": True}


class S3Config(BaseModel):
    """S3 (or S3-compatible) backup configuration."""
    enabled: bool = True
    bucket: str
    region: str = "us-east-1"
    access_key_id: SecretStr = SecretStr("")
    secret_access_key: SecretStr = SecretStr("")
    endpoint: Optional[str] = None
    path_prefix: str = ""
    compression: bool = True
    encryption: bool = False
    encryption_passphrase: Optional[SecretStr] = None
    backup_types: BackupTypes = Field(default_factory=BackupTypes)
    max_backups: int = 30
    backup_interval: int = 1440  # minutes
    auto_backup: bool = False

    @field_validator('bucket')
    @classmethod
    def validate_bucket(cls, v):
        if not v:
            raise ValueError('bucket is required for S3 backups')
        return v

    @field_validator('max_backups', 'backup_interval')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError('must be a positive number')
        return v

    @property
    def passphrase(self) -> Optional[str]:
        if self.encryption_passphrase is None:
            return None
        return self.encryption_passphrase.get_secret_value() or None


class LoggingConfig(BaseModel):
    """Logging options."""
    level: str = "INFO"
    file: Optional[Path] = Path("logs/okr-sync.log")
    console: bool = True


class AppConfig(BaseModel):
    """Main configuration class."""
    store_path: Path = Path("data.db")
    git_work_dir: Path = Path("git-sync")
    git: Optional[GitConfig] = None
    s3: Optional[S3Config] = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "AppConfig":
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """Validate raw configuration data, raising ConfigurationError on bad input."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def to_yaml(self, config_path: Union[str, Path]) -> None:
        """Save configuration to YAML file (secrets included, keep the file private)."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.to_plain_dict(), f, default_flow_style=False, indent=2, sort_keys=False)

    def to_plain_dict(self) -> Dict[str, Any]:
        """Dump to builtin types with secrets revealed, suitable for YAML."""
        return _reveal(self.model_dump(mode='json', by_alias=True, exclude_none=True), self)

    def apply_credentials(self, credentials: "CredentialsConfig") -> "AppConfig":
        """Fill secrets missing from the file with values from the environment."""
        if self.git is not None and credentials.git_token:
            if self.git.api_token is None:
                self.git.api_token = SecretStr(credentials.git_token)
        if self.s3 is not None:
            if credentials.aws_access_key_id and not self.s3.access_key_id.get_secret_value():
                self.s3.access_key_id = SecretStr(credentials.aws_access_key_id)
            if credentials.aws_secret_access_key and not self.s3.secret_access_key.get_secret_value():
                self.s3.secret_access_key = SecretStr(credentials.aws_secret_access_key)
            if credentials.backup_passphrase and self.s3.passphrase is None:
                self.s3.encryption_passphrase = SecretStr(credentials.backup_passphrase)
        return self


def _reveal(dumped: Any, model: Any) -> Any:
    """Replace masked SecretStr values in a model dump with their real values."""
    if isinstance(model, BaseModel):
        for name, field in type(model).model_fields.items():
            key = field.alias or name
            if key not in dumped:
                continue
            value = getattr(model, name)
            if isinstance(value, SecretStr):
                dumped[key] = value.get_secret_value()
            elif isinstance(value, BaseModel):
                dumped[key] = _reveal(dumped[key], value)
    return dumped


class CredentialsConfig(BaseModel):
    """Credentials configuration (read from the environment)."""
    git_token: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    backup_passphrase: Optional[str] = None

    @classmethod
    def from_env(cls) -> "CredentialsConfig":
        """Load credentials from environment variables."""
        return cls(
            git_token=os.getenv('OKR_SYNC_GIT_TOKEN'),
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            backup_passphrase=os.getenv('OKR_SYNC_BACKUP_PASSPHRASE'),
        )
