"""Research pipeline failure."""


class ResearchError(Exception):
    """A research job could not produce a result; the job ends as failed with this message."""
