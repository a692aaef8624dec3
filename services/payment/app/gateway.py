"""
Payment Service — 決済ゲートウェイ (シミュレーション)

外部の決済代行は使わない。一定の確率で失敗させられる。
"""

import random
import secrets
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    gateway_transaction_id: str
    failure_reason: str | None = None


class SimulatedGateway:
    name = "SIMULATED"

    def __init__(self, failure_rate: float = 0.0, rng: random.Random | None = None) -> None:
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()

    @staticmethod
    def _transaction_id() -> str:
        return f"sim_{secrets.token_hex(12)}"

    def charge(self, amount: Decimal) -> GatewayResult:
        if amount <= 0:
            return GatewayResult(False, self._transaction_id(), "Amount must be greater than 0")
        if self.rng.random() < self.failure_rate:
            return GatewayResult(False, self._transaction_id(), "Card declined")
        return GatewayResult(True, self._transaction_id())

    def refund(self, amount: Decimal) -> GatewayResult:
        # 返金は常に成功する
        return GatewayResult(True, self._transaction_id())
