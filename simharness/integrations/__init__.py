"""
Collaborators that talk to the simulated trading platform over HTTP.
"""

from .envelopes import (
    BareObjectStrategy,
    DataEnvelopeStrategy,
    ParseResult,
    WrappedEnvelopeStrategy,
    get_field,
    parse_envelope,
    unwrap,
)
from .exceptions import (
    EnvelopeParseError,
    HTTPClientError,
    HTTPResponseError,
    IntegrationError,
    ProvisioningError,
    ServiceConnectionError,
    ServiceTimeoutError,
    ServiceUnavailableError,
)
from .http_client import (
    DEFAULT_SERVICE_URLS,
    SERVICE_NAMES,
    ServiceClient,
    ServiceClientFactory,
    ServiceConnectivityChecker,
)
from .identity import UserCredential, UserProvisioner
from .smoke_suite import SuiteContext, build_platform_suite
from .trading import OrderSubmissionExecutor

__all__ = [
    'BareObjectStrategy',
    'DataEnvelopeStrategy',
    'ParseResult',
    'WrappedEnvelopeStrategy',
    'get_field',
    'parse_envelope',
    'unwrap',
    'EnvelopeParseError',
    'HTTPClientError',
    'HTTPResponseError',
    'IntegrationError',
    'ProvisioningError',
    'ServiceConnectionError',
    'ServiceTimeoutError',
    'ServiceUnavailableError',
    'DEFAULT_SERVICE_URLS',
    'SERVICE_NAMES',
    'ServiceClient',
    'ServiceClientFactory',
    'ServiceConnectivityChecker',
    'UserCredential',
    'UserProvisioner',
    'SuiteContext',
    'build_platform_suite',
    'OrderSubmissionExecutor',
]
