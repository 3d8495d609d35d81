from pydantic import BaseModel
from typing import Optional, List, Literal

Operation = Literal["encode", "decode"]
JobStatus = Literal["pending", "running", "succeeded", "failed"]

TERMINAL_STATUSES = {"succeeded", "failed"}


class Diagnostics(BaseModel):
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    reason: Optional[str] = None  # process-level failure (launch error, timeout, signal)


class Job(BaseModel):
    job_id: str
    operation: Operation
    inputs: List[str]
    output_path: str
    status: JobStatus = "pending"
    created_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    diagnostics: Optional[Diagnostics] = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobResponse(BaseModel):
    success: bool = True
    message: str
    outputFile: str
    filename: str
    jobId: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
