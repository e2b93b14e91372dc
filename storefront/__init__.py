"""Storefront order core: cart, checkout, order lifecycle, inventory ledger and tracking."""
