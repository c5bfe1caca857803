"""Package entry point for ``python -m anki_converter``.

WHY: Users run the converter as
``python -m anki_converter -i deck.apkg -o deck.json``.

HOW: Delegates to the CLI's main().

RULES:
- This file must exist for ``python -m anki_converter`` to work
"""

if __name__ == "__main__":
    from anki_converter.cli import main
    main()
