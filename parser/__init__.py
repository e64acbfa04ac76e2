"""Parser package: calendar/task text into records."""

from parser.ics import IcsRecordParser

__all__ = ["IcsRecordParser"]
