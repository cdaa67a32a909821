"""Top‑level package for the GreenGrocer ordering application.

The business logic is exposed via :mod:`greengrocer.app`, the data access
layer via :mod:`greengrocer.dao` and the individual services (loyalty,
coupons, messaging, reports, images, carriers) in their own modules.
"""

__version__ = "0.1.0"
