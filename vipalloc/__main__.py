from vipalloc.cli.main import cli

cli()
