import asyncio
import aiohttp
from rich import print
from rich.progress import Progress as ProgressBar

from gsvstitch.catalog import list_resolutions
from gsvstitch.core import fetch_panos, stitch_image
from gsvstitch.my_utils import (
    extract_url_data,
    open_dataset,
    parse_args,
    save_img,
    timer
)


def show_resolutions():
    for res in list_resolutions():
        print(f"[orange1]| zoom {res['zoom']} [green]{res['label']}[/] "
              f"{res['width']}x{res['height']} ({res['tile_count']} tiles)[/]")


async def single(args, panoid: str) -> tuple[int, int, str]:
    with ProgressBar() as bar:
        task = bar.add_task(f"pano {panoid}", total=None)

        def on_progress(progress):
            bar.update(task, completed=progress.loaded, total=progress.total)

        full_img = await stitch_image(panoid, args.zoom, on_progress,
                                      workers=args.workers, retries=args.retries)

    file_size = save_img(full_img, args.output, panoid, args.zoom)
    print(f"[green][OK] Panoid `{panoid}` | zoom {args.zoom} "
          f"| w*h {full_img.width}x{full_img.height} | size {file_size}[/]")
    full_img.close()
    return 1, 1, args.output


async def batch(args) -> tuple[int, int, str]:
    dataset = open_dataset(args.dataset)

    if limit:= args.limit:
        dataset = dataset[:limit]

    sem_pano = asyncio.Semaphore(args.max_pano)
    connector = aiohttp.TCPConnector(limit=args.conn_limit)

    return await fetch_panos(sem_pano, connector, args.processes, args.zoom, dataset, args.output,
                             workers=args.workers, retries=args.retries)


async def main(args) -> tuple[int, int, str]:
    if args.dataset:
        return await batch(args)

    panoid = args.panoid
    if args.url:
        panoid, coords = extract_url_data(args.url)
        if not panoid:
            raise ValueError("Could not find a valid Street View Panorama ID in the URL.")
        if coords:
            print(f"[gray]| Location {coords[0]}, {coords[1]}[/]")

    return await single(args, panoid)


if __name__ == "__main__":
    try:
        args = parse_args()

        if args.list_resolutions:
            show_resolutions()
        else:
            with timer() as t:
                total_panos, successful_panos, output_dir = asyncio.run(main(args))

            print(f"\n[gray]{'-' * 85}[/]")
            print(f"\n[orange1]| Processed [green]{successful_panos}/{total_panos}[/] panos in [green]{t.time_elapsed}[/][/]")
            print(f"[orange1]| Saved at [green]{output_dir}[/][/]\n")
    except Exception as error:
        print(f"[red][MAIN] Error: {error}[/]")
    except KeyboardInterrupt:
        print("[red]Keyboard Interrupted[/]")
