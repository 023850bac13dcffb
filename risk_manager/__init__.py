"""
Tradovate Risk Manager
======================

View and set Tradovate auto-liquidation limits (daily loss limit, daily
profit target, stay-closed behaviour) per account.

The owner-scoped and permission-scoped auto-liq entities are merged into one
settings view by ``risk_manager.risk``; everything else here is the client,
connection handling and the web/CLI surfaces around it.
"""

__version__ = "1.0.0"
