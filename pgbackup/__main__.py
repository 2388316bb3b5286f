from pgbackup.cli import main

main()
