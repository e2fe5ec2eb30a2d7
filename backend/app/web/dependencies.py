from fastapi import Request

from backend.app.services.payment_service import PaymentGate
from backend.app.services.pricing_service import PricingEngine


def get_pricing_engine(request: Request) -> PricingEngine:
    return request.app.state.pricing_engine


def get_payment_gate(request: Request) -> PaymentGate:
    return request.app.state.payment_gate
