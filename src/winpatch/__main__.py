from winpatch.main import main

main()
