"""Billing: subscriptions, usage meters and the payments-provider client."""
