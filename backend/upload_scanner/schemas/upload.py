from pydantic import BaseModel, Field

from upload_scanner.services.uploads import SAFE_ID_PATTERN


class UploadCompletedIn(BaseModel):
    file_id: str = Field(min_length=1, max_length=128, pattern=SAFE_ID_PATTERN)
    subject: str = Field(min_length=1, max_length=128, pattern=SAFE_ID_PATTERN)
    original_filename: str = Field(min_length=1, max_length=255)
    # Where the transport wrote the bytes; defaults to <S3_TEMP_PREFIX>/<subject>/<file_id>.
    object_key: str | None = Field(default=None, max_length=1024)


class UploadRegisteredOut(BaseModel):
    upload_id: int
    file_id: str
    object_key: str
    job_id: int
    job_status: str
