"""
Generation gateway package exposing request types, errors and the gateway.
"""

from .schemas import GenerationRequest, GenerationResult  # noqa: F401
from .errors import (  # noqa: F401
    ConfigError,
    GenerationError,
    GenerationErrorKind,
    ParseError,
    ProviderError,
    SchemaError,
    ValidationError,
)
from .registry import ProviderRegistry  # noqa: F401
from .gateway import GatewayConfig, GenerationGateway  # noqa: F401
