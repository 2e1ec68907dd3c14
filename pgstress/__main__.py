from pgstress.main import main

raise SystemExit(main())
