"""Exceptions raised by the stats components."""


class StatsError(Exception):
    """Base class for stats-subsystem errors."""


class StoryNotFoundError(StatsError):
    def __init__(self, story_id: str) -> None:
        super().__init__(f"Story {story_id} not found")
        self.story_id = story_id


class MalformedRecordError(StatsError):
    """An event row that cannot contribute to a rollup (e.g. rating of 7)."""


class StoryNotPublishedError(StatsError):
    def __init__(self, story_id: str) -> None:
        super().__init__(f"Story {story_id} is not published")
        self.story_id = story_id
