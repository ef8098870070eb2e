from .cli import pmdset_cli

if __name__ == "__main__":
    pmdset_cli()
