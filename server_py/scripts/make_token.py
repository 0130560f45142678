import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parent.parent))

from anonchat.core.identity import create_identity_token

EXPIRE_MINUTES = 60 * 24

external_id = sys.argv[1] if len(sys.argv) > 1 else "1"
print(create_identity_token(external_id, expires_minutes=EXPIRE_MINUTES))
