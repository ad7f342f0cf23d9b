from pelagic_tracks.cli import main

main()
