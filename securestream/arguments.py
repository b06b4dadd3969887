"""Argument bindings injected into the helper command line as ``-KEY=VALUE``."""

import enum
import os
from dataclasses import dataclass
from typing import List, Optional, Sequence

from securestream.config import ChannelConfig
from securestream.exceptions import ConfigurationError


class BindingKind(enum.Enum):
    LITERAL = "literal"
    PID = "pid"
    ADDRESS = "address"
    PORT = "port"
    BEARER_TOKEN = "bearer_token"


@dataclass(frozen=True)
class ArgumentBinding:
    key: str
    kind: BindingKind
    literal: Optional[str] = None

    def resolve(self, config: ChannelConfig, bearer_token: str, pid: int) -> str:
        if self.kind is BindingKind.LITERAL:
            return self.literal or ""
        if self.kind is BindingKind.PID:
            return str(pid)
        if self.kind is BindingKind.ADDRESS:
            if not config.base_url:
                raise ConfigurationError(f"argument {self.key} needs base_url")
            return config.base_url
        if self.kind is BindingKind.PORT:
            if config.port is None:
                raise ConfigurationError(f"argument {self.key} needs port")
            return str(config.port)
        return bearer_token

    def render(self, config: ChannelConfig, bearer_token: str, pid: int) -> str:
        return f"-{self.key}={self.resolve(config, bearer_token, pid)}"


def bindings_for(config: ChannelConfig) -> List[ArgumentBinding]:
    bindings = []
    if config.pid_argument_key:
        bindings.append(ArgumentBinding(config.pid_argument_key, BindingKind.PID))
    if config.url_argument_key:
        bindings.append(ArgumentBinding(config.url_argument_key, BindingKind.ADDRESS))
    if config.port_argument_key:
        bindings.append(ArgumentBinding(config.port_argument_key, BindingKind.PORT))
    if config.bearer_token_argument_key:
        bindings.append(ArgumentBinding(config.bearer_token_argument_key, BindingKind.BEARER_TOKEN))
    return bindings


def build_arguments(
    config: ChannelConfig,
    bearer_token: str,
    pid: Optional[int] = None,
    extra: Sequence[ArgumentBinding] = (),
) -> List[str]:
    """Static helper args followed by one rendered flag per binding."""
    if pid is None:
        pid = os.getpid()
    args = list(config.helper_args)
    for binding in [*bindings_for(config), *extra]:
        args.append(binding.render(config, bearer_token, pid))
    return args
