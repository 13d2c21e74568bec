"""Domain services: tier catalog, entitlements, claims and subscriptions."""
