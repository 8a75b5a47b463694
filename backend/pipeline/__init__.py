# pipeline/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — EVENT PIPELINE
# ============================================================================
