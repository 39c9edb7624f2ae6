from qlrun.cli import main

main()
