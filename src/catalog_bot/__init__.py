"""
catalog-bot: Bulk catalog management with human-in-the-loop approval.

Creates and deletes catalog entries on the commerce platform in batch, pausing
for operator decisions (run mode, seller choice, product codes) delivered over
a Telegram chat.
"""

__version__ = "0.1.0"
