"""
Delivery of finished generations to the front end.
"""

from .queue import RetryPolicy, DeliveryItem, DeliveryQueue, DeliveryProcessor

__all__ = ["RetryPolicy", "DeliveryItem", "DeliveryQueue", "DeliveryProcessor"]
