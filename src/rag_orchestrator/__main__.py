import sys

from rag_orchestrator.cli import main

sys.exit(main())
