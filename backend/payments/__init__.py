# payments/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — PAYMENTS
# ============================================================================
# Gateway client, checkout-intent codec, session builder and the webhook
# reconciler. Import from the submodules directly.
# ============================================================================
