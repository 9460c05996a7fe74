from cronic.cli import main

raise SystemExit(main())
