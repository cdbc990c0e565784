"""
AP2 Vacation Booking - Agents Module
"""

from .catalog import VACATION_PACKAGES, PackageMatcher, FirstNMatcher, OllamaPackageMatcher
from .conversation import VacationChatModel
from .merchant_agent import MerchantAgent
from .credentials_agent import CredentialsAgent, DEFAULT_PAYMENT_METHODS
from .payment_agent import PaymentProcessor, SimulatedPaymentProcessor, DeclineOnce
from .shopping_agent import ShoppingAgent, ShoppingResult, create_shopping_agent

__all__ = [
    'VACATION_PACKAGES', 'PackageMatcher', 'FirstNMatcher', 'OllamaPackageMatcher',
    'VacationChatModel',
    'MerchantAgent',
    'CredentialsAgent', 'DEFAULT_PAYMENT_METHODS',
    'PaymentProcessor', 'SimulatedPaymentProcessor', 'DeclineOnce',
    'ShoppingAgent', 'ShoppingResult', 'create_shopping_agent',
]
