from soilprobe.main import main

main()
