from mediafit.media_resizer import main

if __name__ == "__main__":
    main()
