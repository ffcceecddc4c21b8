from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def load_env(env_path: Optional[Path] = None) -> bool:
    """Load a .env file into the process environment if present.

    Defaults to .env in the current directory. Variables that are already
    set are not overridden. Returns True when a file was loaded.
    """
    if env_path is None:
        env_path = Path.cwd() / ".env"
    env_path = Path(env_path)
    if not env_path.exists():
        return False
    return load_dotenv(dotenv_path=env_path, override=False)
