from datetime import datetime, timezone

from rich.console import Console
from rich.text import Text

from backend.core.conf import settings
from backend.core.registrar import register_app

console = Console()

_log_prefix = f'{datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")} | {"INFO": <8} | - | '
console.print(Text(f'{_log_prefix}Starting {settings.FASTAPI_TITLE} ({settings.ENVIRONMENT})...', style='bold magenta'))
if settings.MONITOR_ENABLED:
    console.print(Text(f'{_log_prefix}Subscription monitor enabled', style='bold cyan'))

app = register_app()
