"""Inbound webhook deliveries from Shopify.

Each delivery is signature-verified, then routed to the controller's
``[resource][action]`` handler for its topic.
"""
