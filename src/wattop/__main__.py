from wattop.app import main

main()
