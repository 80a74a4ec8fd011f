"""Pricing, reservation, recording and payment-provider integration."""

from toolmeter.billing.gate import Authorization, BillingGate, GateDecision, Refusal
from toolmeter.billing.hooks import InvocationContext, InvocationHooks, PreInvocationResult
from toolmeter.billing.ledger import CreditLedger
from toolmeter.billing.maintenance import MaintenanceReport, MaintenanceWorker
from toolmeter.billing.payments import AutoRecharger, ChargeResult, PaymentGateway, StripePaymentGateway
from toolmeter.billing.pricing import PriceQuote, PricingResolver
from toolmeter.billing.recorder import ChargeSummary, UsageRecorder
from toolmeter.billing.subscriptions import SubscriptionTracker
from toolmeter.billing.webhooks import WebhookProcessor

__all__ = [
    "Authorization",
    "BillingGate",
    "GateDecision",
    "Refusal",
    "InvocationContext",
    "InvocationHooks",
    "PreInvocationResult",
    "CreditLedger",
    "MaintenanceReport",
    "MaintenanceWorker",
    "AutoRecharger",
    "ChargeResult",
    "PaymentGateway",
    "StripePaymentGateway",
    "PriceQuote",
    "PricingResolver",
    "ChargeSummary",
    "UsageRecorder",
    "SubscriptionTracker",
    "WebhookProcessor",
]
