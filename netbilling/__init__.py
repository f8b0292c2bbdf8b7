"""
NetBilling - Facturación por monedero y sincronización RADIUS para ISPs.
"""
__version__ = "1.0.0"
