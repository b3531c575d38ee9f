def main() -> None:
    """CLI entrypoint for the spanlens console script."""
    from spanlens.cli.app import app

    app()
