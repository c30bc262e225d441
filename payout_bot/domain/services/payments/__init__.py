"""
Payments Gateway Abstraction Layer
"""
from payout_bot.domain.services.payments.base_gateway import BasePaymentsGateway
from payout_bot.domain.services.payments.copperx_gateway import CopperxGateway

__all__ = ["BasePaymentsGateway", "CopperxGateway"]
