from listing_sync.cli import main

raise SystemExit(main())
