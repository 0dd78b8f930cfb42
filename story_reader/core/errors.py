"""Error taxonomy for the reading core.

Only ``NotFoundError`` and ``UnauthorizedError`` raised while loading a story
are terminal for the presentation layer. ``GenerationTimeout`` is soft: the
orchestrator turns it into a "still generating" state.
"""


class ReaderError(Exception):
    pass


class NotFoundError(ReaderError):
    pass


class UnauthorizedError(ReaderError):
    pass


class OutOfOrderError(ReaderError):
    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Expected chapter {expected}, received chapter {received}")
        self.expected = expected
        self.received = received


class ChapterIndexError(ReaderError, IndexError):
    def __init__(self, index: int, count: int) -> None:
        super().__init__(f"Chapter index {index} out of range for {count} chapters")
        self.index = index
        self.count = count


class GenerationTimeout(ReaderError):
    def __init__(self, story_id: str, chapter_number: int, attempts: int) -> None:
        super().__init__(f"Chapter {chapter_number} of story {story_id} still generating after {attempts} polls")
        self.story_id = story_id
        self.chapter_number = chapter_number
        self.attempts = attempts


class NetworkError(ReaderError):
    pass


class SubmissionError(ReaderError):
    pass
