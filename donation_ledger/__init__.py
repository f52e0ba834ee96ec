"""
Donation payment confirmation and ledger reconciliation service.

- Verifies VNPay / MoMo callbacks before any state changes
- Confirms each donation exactly once across return, IPN and manual channels
- Keeps an append-only ledger that always explains every campaign total
"""

__version__ = "1.0.0"
