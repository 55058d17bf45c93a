from himawari_worker.worker import main

main()
