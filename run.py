"""
Run the SnoopFlow application
"""
import logging
import os
import sys

# Ensure cwd is the directory containing this script
# so that the `snoopflow` package is importable regardless of where we're invoked from.
_here = os.path.dirname(os.path.abspath(__file__))
os.chdir(_here)
if _here not in sys.path:
    sys.path.insert(0, _here)

import uvicorn
from snoopflow.config import settings

if __name__ == "__main__":
    is_dev = settings.ENVIRONMENT == "development"
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    print(f"""
    ╔═══════════════════════════════════════════╗
    ║        SnoopFlow v1.0                     ║
    ║        Options Flow Intelligence          ║
    ╠═══════════════════════════════════════════╣
    ║  Server starting at:                      ║
    ║  http://{settings.HOST}:{settings.PORT}                   ║
    ╚═══════════════════════════════════════════╝
    """)

    uvicorn.run(
        "snoopflow.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=is_dev,
        log_level=settings.LOG_LEVEL.lower(),
    )
