from .base import Base  # noqa: F401
from .farm import Farm  # noqa: F401
from .grid_block import GridBlock  # noqa: F401
from .report import Report  # noqa: F401
from .sampling_session import SamplingSession  # noqa: F401
from .session_block import SessionBlock  # noqa: F401
from .upload import Upload  # noqa: F401
from .image import Image  # noqa: F401
from .audit_log import AuditLog  # noqa: F401
