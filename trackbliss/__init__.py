"""
Trackbliss entitlement and quota-enforcement engine.

Resolves what each tenant's plan, add-on modules and AI credits allow, and
enforces it for the services that create products, documents, returns and
other metered resources.
"""

__version__ = "0.1.0"
