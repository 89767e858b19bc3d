"""
Procurement Kernel

The request lifecycle engine of the procurement system:
- Purchase requests with line items and immutable receptions
- Ordered multi-level approval cascade with peer races and rejection cascade
- Quantity-driven fulfillment tracking (APPROVED -> IN_PROGRESS -> CLOSED)
- One atomic transaction per operation, audited via hash chain
"""

__version__ = "0.1.0"
