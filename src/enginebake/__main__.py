from enginebake.cli import main

raise SystemExit(main())
