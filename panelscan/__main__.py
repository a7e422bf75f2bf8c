from panelscan.main import main

main()
