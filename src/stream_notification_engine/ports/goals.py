from __future__ import annotations

from typing import Any, Protocol


class GoalsPort(Protocol):
    async def process_donation_goal(self, platform: str, amount: float) -> dict[str, Any]: ...

    async def process_paypiggy_goal(self, platform: str) -> dict[str, Any]: ...
