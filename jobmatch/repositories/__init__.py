from jobmatch.repositories.analyses_results import (
    InMemoryAnalysesResultsRepository,
    PostgresAnalysesResultsRepository,
)
from jobmatch.repositories.resumes import InMemoryResumesRepository, PostgresResumesRepository
from jobmatch.repositories.sessions import InMemorySessionsRepository, PostgresSessionsRepository

__all__ = [
    "InMemoryAnalysesResultsRepository",
    "PostgresAnalysesResultsRepository",
    "InMemoryResumesRepository",
    "PostgresResumesRepository",
    "InMemorySessionsRepository",
    "PostgresSessionsRepository",
]
