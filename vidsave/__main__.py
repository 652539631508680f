from vidsave.bot import main

main()
