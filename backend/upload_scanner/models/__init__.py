# Import models so they register with SQLAlchemy metadata.
from upload_scanner.models.job import Job, JobStage, JobStatus, JobType  # noqa: F401
from upload_scanner.models.upload import Upload  # noqa: F401
from upload_scanner.models.user import User  # noqa: F401
