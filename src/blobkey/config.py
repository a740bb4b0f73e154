"""environment-keyed storage settings

A Config maps names ("default", "staging", ...) to Environment objects.
Everything is validated when loaded, so a broken key or account fails at
startup rather than on the first request.
"""

import os
import re
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import logging
import yaml
from . import ConfigurationError
from .sharedkey import decode_key

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "default"
ENV_PREFIX = "BLOBKEY__"
DEFAULT_ENDPOINT_SUFFIX = "core.windows.net"

ACCOUNT_PATTERN = r"[a-z0-9]{3,24}"
SETTING_KEYS = {
    "api_url",
    "account_name",
    "account_key",
    "default_container",
    "connection_string",
}


@dataclass(frozen=True)
class Environment:
    account_name: str
    account_key: str = field(repr=False)
    api_url: str = ""
    default_container: Optional[str] = None
    name: str = DEFAULT_ENVIRONMENT

    def __post_init__(self):
        if not self.account_name or not re.fullmatch(
            ACCOUNT_PATTERN, self.account_name
        ):
            raise ConfigurationError(
                f"environment {self.name!r}: invalid account {self.account_name!r}"
            )
        if not self.account_key:
            raise ConfigurationError(f"environment {self.name!r}: missing account key")
        decode_key(self.account_key)
        api_url = self.api_url or (
            f"https://{self.account_name}.blob.{DEFAULT_ENDPOINT_SUFFIX}"
        )
        parsed = urllib.parse.urlsplit(api_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                f"environment {self.name!r}: invalid api url {api_url!r}"
            )
        if parsed.query or parsed.fragment:
            raise ConfigurationError(
                f"environment {self.name!r}: api url {api_url!r} "
                "must not carry query or fragment"
            )
        object.__setattr__(self, "api_url", api_url.rstrip("/"))


def parse_connection_string(value: str) -> dict:
    """
    parse an Azure storage connection string into settings, e.g.
    DefaultEndpointsProtocol=https;AccountName=x;AccountKey=y;EndpointSuffix=core.windows.net
    """
    parts = {}
    for item in value.strip().strip(";").split(";"):
        if not item.strip():
            continue
        k, sep, v = item.partition("=")
        if not sep:
            raise ConfigurationError(f"malformed connection string segment {k!r}")
        parts[k.strip()] = v.strip()
    try:
        settings = {
            "account_name": parts["AccountName"],
            "account_key": parts["AccountKey"],
        }
    except KeyError as e:
        (key,) = e.args
        raise ConfigurationError(f"key {key} not provided in connection string")
    if "BlobEndpoint" in parts:
        settings["api_url"] = parts["BlobEndpoint"]
    else:
        protocol = parts.get("DefaultEndpointsProtocol", "https")
        suffix = parts.get("EndpointSuffix", DEFAULT_ENDPOINT_SUFFIX)
        settings["api_url"] = f"{protocol}://{settings['account_name']}.blob.{suffix}"
    return settings


def make_environment(name: str, settings: dict) -> Environment:
    if not isinstance(settings, dict):
        raise ConfigurationError(f"environment {name!r}: expecting a mapping")
    unknown = set(settings) - SETTING_KEYS
    if unknown:
        raise ConfigurationError(
            f"environment {name!r}: unknown settings {sorted(unknown)}"
        )
    settings = dict(settings)
    for k, v in settings.items():
        # yaml reads an all-digit account name as int
        if isinstance(v, (int, float)):
            settings[k] = str(v)
        elif v is not None and not isinstance(v, str):
            raise ConfigurationError(
                f"environment {name!r}: {k} must be a scalar, got {type(v).__name__}"
            )
    connection_string = settings.pop("connection_string", None)
    if connection_string:
        # explicit settings win over the connection string
        settings = parse_connection_string(connection_string) | {
            k: v for k, v in settings.items() if v
        }
    try:
        return Environment(
            name=name,
            account_name=settings["account_name"],
            account_key=settings["account_key"],
            api_url=settings.get("api_url") or "",
            default_container=settings.get("default_container") or None,
        )
    except KeyError as e:
        (key,) = e.args
        raise ConfigurationError(f"environment {name!r}: {key} not provided")


class Config:
    """registry of named environments"""

    def __init__(self, environments=()):
        self.environments = {}
        for env in environments:
            self.add(env)

    def add(self, env: Environment):
        if env.name in self.environments:
            raise ConfigurationError(f"duplicated environment {env.name!r}")
        self.environments[env.name] = env
        return env

    def get(self, name: str = DEFAULT_ENVIRONMENT) -> Environment:
        try:
            return self.environments[name]
        except KeyError:
            raise ConfigurationError(f"environment {name!r} not configured") from None

    def __getitem__(self, name):
        return self.get(name)

    def __contains__(self, name):
        return name in self.environments

    def __iter__(self):
        return iter(self.environments)

    def __len__(self):
        return len(self.environments)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        if not isinstance(data, dict) or not isinstance(
            data.get("environments"), dict
        ):
            raise ConfigurationError("expecting a mapping under 'environments'")
        return cls(
            make_environment(str(name), settings or {})
            for name, settings in data["environments"].items()
        )

    @classmethod
    def from_yaml(cls, path) -> "Config":
        path = Path(path)
        logger.debug("loading config from %s", path)
        try:
            with path.open("r") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed loading config {path}: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ=None, prefix: str = ENV_PREFIX) -> "Config":
        """
        collects ``{prefix}{ENVIRONMENT}__{SETTING}`` variables, e.g.
        BLOBKEY__DEFAULT__ACCOUNT_NAME, BLOBKEY__STAGING__CONNECTION_STRING
        """
        environ = os.environ if environ is None else environ
        found = {}
        for k, v in environ.items():
            if not k.startswith(prefix):
                continue
            envname, sep, setting = k[len(prefix) :].partition("__")
            if not sep or not envname:
                logger.warning("ignoring malformed variable %s", k)
                continue
            found.setdefault(envname.lower(), {})[setting.lower()] = v
        logger.debug("environments found in env: %s", sorted(found))
        return cls.from_dict({"environments": found})
