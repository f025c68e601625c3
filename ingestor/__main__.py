from ingestor.main import cli

cli()
