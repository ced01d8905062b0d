'''
Define variables used across the entire application
'''


MOVING_SPEED = 3.0               # km/h, above this a vehicle counts as moving
DEFAULT_TOLERANCE_MINUTES = 30   # grace period after an expected checkpoint time
DEFAULT_DESTINATION_RADIUS_M = 500
EARTH_RADIUS_M = 6_371_000

# Replies that count as an acknowledgement of an alarm
CONFIRM_WORDS = {"OK", "SI", "SÌ", "YES", "CONFERMO", "CONFIRM", "RICEVUTO", "VISTO"}
CONFIRM_SYMBOLS = ("👍", "✓", "✔")

# Digits kept from a phone number when matching an inbound reply
PHONE_MATCH_DIGITS = 10

# AlarmNotification states
PENDING = "pending"
SENT = "sent"
FAILED = "failed"
RESPONDED = "responded"
CONFIRMED = "confirmed"
ESCALATED_LEVEL2 = "escalated_level2"
ESCALATED_LEVEL3 = "escalated_level3"

AWAITING_RESPONSE = (SENT, ESCALATED_LEVEL2)
