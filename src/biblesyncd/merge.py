"""Per data type conflict resolution.

The engine only ever compares timestamps and picks a side. A data type that
needs structural knowledge of its payload registers a MergeStrategy here;
everything else falls back to last-write-wins.
"""

from biblesyncd import logging

logger = logging.get_logger(__name__)

PLAN_PROGRESS = "planProgress"


class MergeStrategy(object):
    """Last-write-wins: the newer side is taken unchanged."""

    def on_client_newer(self, client_data, server_data):
        """Returns the data to store when the incoming item is newer."""
        return client_data

    def on_server_newer(self, client_data, server_data):
        """Returns ``(data_for_client, persist)`` when the stored item is newer.

        ``persist`` tells the engine to write ``data_for_client`` back to the
        stored record.
        """
        return server_data, False


def _day_number(day):
    if isinstance(day, bool):
        return None
    if isinstance(day, int):
        return day
    if isinstance(day, float) and day.is_integer():
        return int(day)
    if isinstance(day, str):
        try:
            return int(day)
        except ValueError:
            return None
    return None


def _days(data):
    """Completed day numbers as a set of ints; anything else is dropped."""
    if not isinstance(data, dict):
        return set()
    days = data.get("completedDays") or []
    if not isinstance(days, (list, tuple)):
        logger.warning("Ignoring completedDays of type {}".format(type(days).__name__))
        return set()

    numbers = set()
    for day in days:
        number = _day_number(day)
        if number is None:
            logger.warning("Dropping completed day {!r}".format(day))
            continue
        numbers.add(number)
    return numbers


def merge_plan_progress(client_data, server_data):
    # A day once read stays read: completedDays only ever grows
    merged_days = sorted(_days(client_data) | _days(server_data))
    merged = {}
    if isinstance(server_data, dict):
        merged.update(server_data)
    if isinstance(client_data, dict):
        merged.update(client_data)
    merged["completedDays"] = merged_days
    return merged


class PlanProgressMerge(MergeStrategy):
    """Union of completed days; other fields prefer the client's value."""

    def on_client_newer(self, client_data, server_data):
        return merge_plan_progress(client_data, server_data)

    def on_server_newer(self, client_data, server_data):
        return merge_plan_progress(client_data, server_data), True


class MergeRegistry(object):
    def __init__(self, default=None):
        self.default = default or MergeStrategy()
        self._strategies = {}

    def register(self, data_type, strategy):
        logger.debug("Registering {} merge for {}".format(type(strategy).__name__, data_type))
        self._strategies[data_type] = strategy

    def get(self, data_type):
        return self._strategies.get(data_type, self.default)


def default_registry():
    registry = MergeRegistry()
    registry.register(PLAN_PROGRESS, PlanProgressMerge())
    return registry
