from vmplane.worker.main import main

main()
