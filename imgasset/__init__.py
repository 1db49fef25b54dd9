import os
from pathlib import Path

# Read by libvips when pyvips is first imported: one worker thread per pipeline.
os.environ.setdefault('VIPS_CONCURRENCY', '1')


def get_version() -> str:
  return Path(__file__).parent.resolve().with_name('VERSION').read_text().strip()


version = get_version()
