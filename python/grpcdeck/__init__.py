"""
grpcdeck: reflection-driven gRPC client core.

Connect to an endpoint, discover its services over server reflection,
compose requests as JSON text, and drive the four call shapes.

    from grpcdeck.config import Config
    from grpcdeck.session import Session

    session = Session(Config.from_env())
    session.connect(Endpoint("localhost:50051"))   # grpcdeck.domain.Endpoint
"""
from __future__ import annotations

__version__ = "0.1.0"
