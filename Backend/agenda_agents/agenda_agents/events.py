# agenda_agents/events.py
APP_FOREGROUND = "AppForeground"
DATA_MUTATED = "DataMutated"
EXPLICIT_REFRESH = "ExplicitRefresh"
NOTIFICATION_DELIVERED = "NotificationDelivered"

REFRESH_EVENTS = (APP_FOREGROUND, DATA_MUTATED, EXPLICIT_REFRESH)
