import logging
from datetime import datetime, timezone
from pathlib import Path


def setup_logging(
    level: str = "INFO",
    component: str = "book",
    subdir: str = "default",
    base_dir: str | Path = "logs",
) -> Path:
    """
    Configure logging:
      - Console (stdout)
      - Daily log file in logs/<component>/<symbol>/YYYY-MM-DD.log (UTC date)

    Returns:
      Path to the current daily log file.
    """

    log_dir = Path(base_dir) / component / subdir
    log_dir.mkdir(parents=True, exist_ok=True)
    date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = log_dir / f"{date_str}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(fmt)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(fh)
    root.addHandler(sh)
    return log_path
