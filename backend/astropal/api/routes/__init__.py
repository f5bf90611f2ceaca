# API Routes Module
from astropal.api.routes import (
    admin,
    billing,
    webhooks,
)

__all__ = [
    "admin",
    "billing",
    "webhooks",
]
