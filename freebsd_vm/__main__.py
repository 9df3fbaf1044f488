from freebsd_vm import cli

raise SystemExit(cli.main())
