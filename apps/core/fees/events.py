from django.dispatch import Signal

# Sent inside the transaction that applied the collection.
# kwargs: line_item, amount, collected_on
line_item_collected = Signal()

# Sent inside the transaction once a line item's pending amount reaches zero.
# Receivers may raise to abort the settlement.
# kwargs: line_item, settled_on
line_item_settled = Signal()

# Sent after commit for receipt and notification consumers.
# kwargs: payment, breakdown
payment_finalized = Signal()
