"""Configuration management for git sync and S3 backup."""

from .settings import (
    AppConfig,
    AuthMethod,
    CredentialsConfig,
    GitConfig,
    HttpsAuth,
    ProxyConfig,
    S3Config,
    SshAuth,
    TokenAuth,
)

__all__ = [
    "AppConfig",
    "AuthMethod",
    "CredentialsConfig",
    "GitConfig",
    "HttpsAuth",
    "ProxyConfig",
    "S3Config",
    "SshAuth",
    "TokenAuth",
]
