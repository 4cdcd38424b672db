from hardened_api.server import main

raise SystemExit(main())
