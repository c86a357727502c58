from build_hook.cli import main

raise SystemExit(main())
