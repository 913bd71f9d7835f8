"""Pydantic models for registry credentials.

These models cover both sides of credential federation:

- Input: ``RegistryCredentials`` entries taken from a build request, each with
  exactly one credential source (Secret, inline basic auth, or cloud identity).
- Output: ``DockerConfigJSON``, the Docker-style ``config.json`` document
  consumed by the build execution layer.

Example:
    >>> from hephaestus_credentials.schemas import BasicAuthCredentials, RegistryCredentials
    >>> creds = RegistryCredentials(
    ...     server="registry.example.com",
    ...     basic_auth=BasicAuthCredentials(username="user", password="pass"),
    ... )
    >>> creds.source
    <CredentialSource.BASIC_AUTH: 'basic_auth'>
"""

from __future__ import annotations

import base64
import binascii
import json
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Kubernetes Secret type and data key for Docker config JSON payloads
DOCKER_CONFIG_JSON_SECRET_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"


class CredentialSource(str, Enum):
    """Which branch resolves a credential entry."""

    SECRET = "secret"
    BASIC_AUTH = "basic_auth"
    CLOUD = "cloud"


class AuthConfig(BaseModel):
    """Credentials for one registry inside a Docker config file.

    Field names match the Docker ``config.json`` wire format. Unset fields are
    omitted when serialized.

    Attributes:
        username: Basic-auth username.
        password: Basic-auth password or token.
        auth: Base64-encoded ``username:password``.
        email: Legacy field kept for round-tripping.
        identitytoken: OAuth identity token.
        registrytoken: Bearer token presented directly to the registry.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    username: str | None = None
    password: str | None = None
    auth: str | None = None
    email: str | None = None
    identitytoken: str | None = None
    registrytoken: str | None = None

    def basic_credentials(self) -> tuple[str, str]:
        """Return ``(username, password)``, decoding ``auth`` when needed.

        Returns:
            Tuple of username and password. Empty strings when neither the
            explicit fields nor ``auth`` carry credentials.

        Raises:
            ValueError: If ``auth`` is present but is not base64 ``user:pass``.
        """
        if self.username or self.password:
            return self.username or "", self.password or ""
        if not self.auth:
            return "", ""
        try:
            decoded = base64.b64decode(self.auth, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"cannot decode auth field: {e}") from e
        username, sep, password = decoded.partition(":")
        if not sep:
            raise ValueError("auth field is not in user:password format")
        return username, password

    def __repr__(self) -> str:
        # Never render secret material.
        return f"AuthConfig(username={self.username!r}, password=***)"


class DockerConfigJSON(BaseModel):
    """Docker ``config.json`` document keyed by registry hostname."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    auths: dict[str, AuthConfig] = Field(default_factory=dict)

    @classmethod
    def from_bytes(cls, data: bytes | str) -> DockerConfigJSON:
        """Parse a Docker config JSON payload.

        Raises:
            pydantic.ValidationError: If the payload is not a valid document.
        """
        return cls.model_validate_json(data)

    def to_json(self) -> str:
        """Serialize to the on-disk format, omitting unset fields."""
        return json.dumps(
            {
                "auths": {
                    server: auth.model_dump(exclude_none=True)
                    for server, auth in self.auths.items()
                }
            },
            indent=2,
        )


class BasicAuthCredentials(BaseModel):
    """Inline username and password."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    username: str
    password: str

    @field_validator("username", "password")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject blank values."""
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    def __repr__(self) -> str:
        return f"BasicAuthCredentials(username={self.username!r}, password=***)"


class SecretCredentials(BaseModel):
    """Reference to a namespaced Secret of type ``kubernetes.io/dockerconfigjson``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    namespace: str

    @field_validator("name", "namespace")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject blank values."""
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class RegistryCredentials(BaseModel):
    """One credential entry from a build request.

    At most one of ``basic_auth`` and ``secret`` may be set. An entry with
    neither is resolved through cloud identity, whether or not
    ``cloud_provided`` is set explicitly.

    Attributes:
        server: Bare registry hostname (no scheme, no path).
        cloud_provided: Explicitly request cloud identity.
        basic_auth: Inline username and password.
        secret: Reference to a Docker config Secret.

    Example:
        >>> RegistryCredentials(server="foo.azurecr.io", cloud_provided=True).source
        <CredentialSource.CLOUD: 'cloud'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    server: str = ""
    cloud_provided: bool = False
    basic_auth: BasicAuthCredentials | None = None
    secret: SecretCredentials | None = None

    @field_validator("server")
    @classmethod
    def validate_bare_hostname(cls, v: str) -> str:
        """Reject full URLs and image references."""
        v = v.strip()
        if "://" in v or "/" in v:
            raise ValueError(f"server must be a bare registry hostname, got {v!r}")
        return v

    @model_validator(mode="after")
    def validate_single_source(self) -> RegistryCredentials:
        """Enforce one credential source and a server where one is needed."""
        if self.basic_auth is not None and self.secret is not None:
            raise ValueError("cannot specify more than 1 credential source")
        if self.secret is None and not self.server:
            raise ValueError("server must not be blank")
        if self.cloud_provided and (self.basic_auth is not None or self.secret is not None):
            raise ValueError("cloud_provided cannot be combined with another credential source")
        return self

    @property
    def source(self) -> CredentialSource:
        """Return the branch that resolves this entry."""
        if self.secret is not None:
            return CredentialSource.SECRET
        if self.basic_auth is not None:
            return CredentialSource.BASIC_AUTH
        return CredentialSource.CLOUD


class AuthDirective(BaseModel):
    """Bearer challenge parameters returned by a registry's unauthenticated ``/v2/`` request.

    Attributes:
        service: Value of the challenge ``service`` parameter.
        realm: Token endpoint URL from the challenge ``realm`` parameter.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str
    realm: str


__all__ = [
    "DOCKER_CONFIG_JSON_KEY",
    "DOCKER_CONFIG_JSON_SECRET_TYPE",
    "AuthConfig",
    "AuthDirective",
    "BasicAuthCredentials",
    "CredentialSource",
    "DockerConfigJSON",
    "RegistryCredentials",
    "SecretCredentials",
]
