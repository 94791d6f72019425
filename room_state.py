import json
from numbers import Integral, Real
from typing import Any, Dict, List, Optional

from errors import InvalidInput, StaleTicketVote, Unauthorized


class Ticket:
    def __init__(self, ticket_id: str, votes: Optional[Dict[str, int]] = None):
        self.id = ticket_id
        self.votes: Dict[str, int] = dict(votes or {})


class User:
    """A joined participant. ``live_stream`` is None until reconciliation attaches one."""

    def __init__(self, name: str, live_stream=None):
        self.name = name
        self.live_stream = live_stream


def parse_vote_value(value: Any) -> int:
    """Return ``value`` as an int if it is an integral number, else raise InvalidInput."""
    if isinstance(value, bool):
        raise InvalidInput(f"vote must be a number, got {value!r}")
    if isinstance(value, Integral):
        return int(value)
    if isinstance(value, Real) and float(value).is_integer():
        return int(value)
    raise InvalidInput(f"vote must be an integral number, got {value!r}")


class Room:
    """Canonical state of one estimation session.

    Fields are read freely but only changed through the methods below, each
    of which keeps the ticket index in range and enforces the game-master
    rules. Mutators return True when the state changed.
    """

    def __init__(self, room_id: str, tickets: List[Ticket]):
        if not tickets:
            raise InvalidInput("a room needs at least one ticket")
        self.id = room_id
        self.tickets = tickets
        self.users: Dict[str, User] = {}
        self.game_master: Optional[str] = None
        self.current_ticket = 0
        self.votes_revealed = False

    @classmethod
    def create(cls, room_id: str, ticket_ids) -> "Room":
        ticket_ids = list(ticket_ids or [])
        if not ticket_ids:
            raise InvalidInput("no tickets provided")
        seen = set()
        for ticket_id in ticket_ids:
            if not isinstance(ticket_id, str):
                raise InvalidInput(f"ticket id must be a string, got {ticket_id!r}")
            # Votes are matched to the current ticket by id
            if ticket_id in seen:
                raise InvalidInput(f"duplicate ticket id {ticket_id!r}")
            seen.add(ticket_id)
        return cls(room_id, [Ticket(ticket_id) for ticket_id in ticket_ids])

    @property
    def current(self) -> Ticket:
        return self.tickets[self.current_ticket]

    def is_game_master(self, user_name: str) -> bool:
        return self.game_master is not None and self.game_master == user_name

    def add_user(self, user_name: str, live_stream=None) -> User:
        user = User(user_name, live_stream)
        self.users[user_name] = user
        return user

    def remove_user(self, user_name: str) -> bool:
        removed = self.users.pop(user_name, None) is not None
        if self.is_game_master(user_name):
            self.game_master = None
            removed = True
        return removed

    def claim_game_master(self, user_name: str) -> bool:
        if self.game_master:
            return False
        self.game_master = user_name
        return True

    def record_vote(self, user_name: str, ticket_id: str, value: Any) -> int:
        if self.is_game_master(user_name):
            raise Unauthorized(f"game master {user_name} cannot vote")
        if ticket_id != self.current.id:
            raise StaleTicketVote(f"vote for {ticket_id!r}, current ticket is {self.current.id!r}")
        vote = parse_vote_value(value)
        self.current.votes[user_name] = vote
        return vote

    def reveal(self, user_name: str) -> bool:
        self._require_game_master(user_name, "reveal votes")
        self.votes_revealed = True
        return True

    def advance(self, user_name: str) -> bool:
        self._require_game_master(user_name, "advance ticket")
        if self.current_ticket >= len(self.tickets) - 1:
            return False
        self.current_ticket += 1
        self.votes_revealed = False
        return True

    def retreat(self, user_name: str) -> bool:
        self._require_game_master(user_name, "go back a ticket")
        if self.current_ticket <= 0:
            return False
        self.current_ticket -= 1
        self.votes_revealed = False
        return True

    def _require_game_master(self, user_name: str, action: str):
        if not self.is_game_master(user_name):
            raise Unauthorized(f"{user_name} is not the game master and cannot {action}")

    def reachable_users(self) -> List[User]:
        return [user for user in self.users.values() if user.live_stream is not None]

    def to_record(self) -> dict:
        """Serialize to the snapshot/wire view; stream handles are never included."""
        return {
            "ID": self.id,
            "Tickets": [{"ID": ticket.id, "Votes": dict(ticket.votes)} for ticket in self.tickets],
            "Users": {name: name for name in self.users},
            "GameMaster": self.game_master or "",
            "CurrentTicket": self.current_ticket,
            "VotesRevealed": self.votes_revealed,
        }

    @classmethod
    def from_record(cls, record: dict) -> "Room":
        try:
            tickets = [Ticket(t["ID"], {name: int(v) for name, v in (t.get("Votes") or {}).items()})
                       for t in record["Tickets"]]
            room = cls(record["ID"], tickets)
            for name in record.get("Users") or {}:
                room.add_user(name)
            room.game_master = record.get("GameMaster") or None
            index = int(record.get("CurrentTicket", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInput(f"malformed room record: {e}") from e
        room.current_ticket = min(max(index, 0), len(tickets) - 1)
        room.votes_revealed = bool(record.get("VotesRevealed", False))
        return room

    def to_json(self) -> bytes:
        return json.dumps(self.to_record()).encode("utf-8")

    @classmethod
    def from_json(cls, data) -> "Room":
        try:
            record = json.loads(data)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as e:
            raise InvalidInput(f"room snapshot is not valid JSON: {e}") from e
        if not isinstance(record, dict):
            raise InvalidInput("room snapshot must be a JSON object")
        return cls.from_record(record)
