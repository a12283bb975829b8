from pydantic import BaseModel, Field
from typing import Literal, Optional, List
from genbuilder.core.prompt import BusinessContext
from genbuilder.core.workflow import GenerationStage, JobStatus

class BusinessContextIn(BaseModel):
    business_context: Optional[str] = None
    company_name: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    use_cases: List[str] = []

    def to_context(self) -> BusinessContext:
        return BusinessContext(
            business_context=self.business_context,
            company_name=self.company_name,
            state=self.state,
            country=self.country,
            use_cases=list(self.use_cases),
        )

class GenerationCreateRequest(BaseModel):
    generation_id: Optional[str] = Field(None, description="Use an id already issued by the caller")
    prompt: str = Field(..., min_length=1, examples=["A CRM for a small landscaping company"])
    business_context: Optional[BusinessContextIn] = None

class IterationCreateRequest(BaseModel):
    iteration_id: Optional[str] = None
    prompt: str = Field(..., min_length=1, examples=["Add a calendar view for scheduled jobs"])

class GenerationResponse(BaseModel):
    id: str
    status: JobStatus
    current_stage: GenerationStage
    current_detail: Optional[str] = None
    message: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    error: Optional[str] = None

class IterationResponse(BaseModel):
    id: str
    generation_id: str
    status: JobStatus

class CancelResponse(BaseModel):
    id: str
    cancelled: bool

class PreviewAcceptedResponse(BaseModel):
    status: Literal["deploying"] = "deploying"

class PreviewStatusResponse(BaseModel):
    status: Literal["starting", "ready", "failed"]
    url: str
    port: int
    error: Optional[str] = None

class HealthResponse(BaseModel):
    status: str = "ok"
    active_jobs: int
    preview: Optional[str] = None
