"""
Trade sync core package.

Provides:
- Configuration & REST endpoints for the PD2 marketplace API
- Core domain enums, models, errors and the Socket.IO frame codec
- Services for the socket correlator, pending listings, offers and marketplace REST
- Application-level TradeSync that wires them together
"""
