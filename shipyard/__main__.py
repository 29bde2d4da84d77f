from shipyard.main import main

raise SystemExit(main())
