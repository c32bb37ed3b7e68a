from codebase_rag.cli import main

main()
