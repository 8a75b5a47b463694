# fulfillment/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — FULFILLMENT
# ============================================================================
# Shipping labels and confirmation emails for paid orders.
# ============================================================================
