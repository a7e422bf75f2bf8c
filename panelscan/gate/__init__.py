"""Daily completion gate."""

from panelscan.gate.daily_gate import DailyGate, is_done_under, local_day

__all__ = ["DailyGate", "is_done_under", "local_day"]
