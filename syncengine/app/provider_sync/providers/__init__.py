"""
Bank Provider Implementations

Abstract base class, typed provider data and concrete implementations for
different banking APIs.
"""

from .base import (
    BaseBankProvider,
    ConnectionCredentials,
    InstitutionInfo,
    OAuthTokens,
    ProviderAccountData,
    ProviderTransactionData,
    ProviderUserInfo,
    RawAccountsResponse,
)
from .enable_banking import EnableBankingProvider
from .oauth2 import OAuth2AggregatorProvider
from .registry import ProviderRegistry, register_adapter

__all__ = [
    'BaseBankProvider',
    'ConnectionCredentials',
    'InstitutionInfo',
    'OAuthTokens',
    'ProviderAccountData',
    'ProviderTransactionData',
    'ProviderUserInfo',
    'RawAccountsResponse',
    'EnableBankingProvider',
    'OAuth2AggregatorProvider',
    'ProviderRegistry',
    'register_adapter',
]
