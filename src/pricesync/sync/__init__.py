"""Pricing sync core -- field mapping, durable queue, cascade planning and ingress.

Remote pricing changes arrive through WebhookIngress, are written to the
Source family row and fanned out by CascadePlanner into one SyncJob per
sibling. QueueProcessor drains the SyncQueue back into the Remote on the
programmatic channel chosen by LoopGuard.
"""
