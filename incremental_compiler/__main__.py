"""Allow ``python -m incremental_compiler``."""

from incremental_compiler.cli import main

raise SystemExit(main())
