from .connection import get_db, engine, AsyncSessionLocal, init_db, Base

# Import member models to ensure they are registered with Base
from .member_models import (
    TrainerDB, ClientDB, MemberAccountDB, PASSWORD_HANDLED_BY_AUTH
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    'TrainerDB', 'ClientDB', 'MemberAccountDB', 'PASSWORD_HANDLED_BY_AUTH',
]
