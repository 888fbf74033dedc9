from winpatch import cli


def main() -> None:
    """
    Program Entry Point
    """
    cli.app()


if __name__ == "__main__":
    main()
