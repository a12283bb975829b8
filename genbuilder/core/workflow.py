from dataclasses import dataclass
from enum import Enum

class GenerationStage(str, Enum):
    PENDING = "pending"
    DESIGNING = "designing"
    SCAFFOLDING = "scaffolding"
    CODING = "coding"
    DATABASE = "database"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStage.COMPLETE, GenerationStage.FAILED)

    @classmethod
    def parse(cls, name: str) -> "GenerationStage | None":
        try:
            return cls(name)
        except ValueError:
            return None

class JobStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

STAGE_MESSAGES: dict[GenerationStage, str] = {
    GenerationStage.PENDING: "Preparing to build your app...",
    GenerationStage.DESIGNING: "Planning your app architecture...",
    GenerationStage.SCAFFOLDING: "Creating project structure...",
    GenerationStage.CODING: "Building components and API routes...",
    GenerationStage.DATABASE: "Setting up database and seed data...",
    GenerationStage.FINALIZING: "Validating build and preparing preview...",
    GenerationStage.COMPLETE: "Your app is ready!",
    GenerationStage.FAILED: "Something went wrong.",
}

@dataclass(frozen=True)
class AppMetadata:
    title: str
    description: str
