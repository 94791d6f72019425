ROOM_KEY_PREFIX = "room:"
ROOM_KEY = ROOM_KEY_PREFIX + "{room_id}" # room id - JSON room snapshot

# **Example `room:{id}` value**
# {
#   "ID": "{roomId}",
#   "Tickets": [{"ID": "T1", "Votes": {"alice": 3}}],
#   "Users": {"alice": "alice", "gm": "gm"},
#   "GameMaster": "gm",            # "" when the role is vacant
#   "CurrentTicket": 0,
#   "VotesRevealed": false
# }
