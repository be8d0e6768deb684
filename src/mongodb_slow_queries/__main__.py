"""Allow ``python -m mongodb_slow_queries``."""

from mongodb_slow_queries.cli import main

raise SystemExit(main())
