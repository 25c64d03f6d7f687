from darkware_zapret.app import main

raise SystemExit(main())
