# Stream and consumer-group names shared by producers and workers.

TICKET_PROCESSING = "ticket_processing"
OUTBOUND_MESSAGES = "outbound_messages"
RESOLUTION_NOTIFICATIONS = "resolution_notifications"

PROCESSORS_GROUP = "processors"
SENDERS_GROUP = "senders"
NOTIFIERS_GROUP = "notifiers"
