from kiosk_avatar.main import main

raise SystemExit(main())
