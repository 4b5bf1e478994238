"Implements ``sampleflow show``"

import logging

import click
from click.shell_completion import CompletionItem

import sampleflow
from sampleflow.cli.shared_options import command

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ConfigPropertyParam(click.ParamType):
    """Handles ``sampleflow show`` arguments"""
    name = "property"
    _properties = None

    @property
    def properties(self):
        """Find properties offered by ConfigMgr"""
        if not self._properties:
            from sampleflow.config import ConfigMgr
            self._properties = {
                prop: getattr(getattr(ConfigMgr, prop), "__doc__")
                for prop in dir(ConfigMgr)
                if (prop[0] != "_"
                    and isinstance(getattr(ConfigMgr, prop), property))
            }
        return self._properties

    def shell_complete(self, ctx, param, incomplete):
        """Complete property names on tab"""
        # This only lists public properties, no member variables,
        # mainly because member variables can't have docstrings set.
        return [CompletionItem(x)
                for x in self.properties.keys()
                if x.startswith(incomplete)]

    def __repr__(self):
        props = "\n".join(
            "  {}: {}".format(p, (self.properties[p] or "").strip().split("\n")[0])
            for p in self.properties
        )
        return "\n".join(["Properties:", props])


def show_help(ctx, _param=None, value=True):
    """Display click command help"""
    if value:
        helpstr = [ctx.get_help(), '']
        arg_docs = [repr(param.type)
                    for param in ctx.command.params
                    if isinstance(param, click.Argument)]
        click.echo("\n".join(helpstr + arg_docs), color=ctx.color)
        ctx.exit()


@command(add_help_option=False)
@click.argument(
    "prop", nargs=1, metavar="PROPERTY", required=False,
    type=ConfigPropertyParam()
)
@click.option(
    "--help", "-h", callback=show_help, expose_value=False, is_flag=True
)
@click.option(
    "--source", "-s", is_flag=True,
    help="Show source"
)
@click.pass_context
def show(ctx, prop, source):
    """
    Show configuration properties

    PROPERTY may be a dotted path (e.g. ``stages.flye``). Without
    PROPERTY, the merged configuration is shown.
    """
    cfg = sampleflow.get_config()
    if not prop:
        click.echo(cfg.to_yaml(source))
        return

    log.debug("querying prop %s", prop)
    key, _, rest = prop.partition(".")
    if isinstance(getattr(type(cfg), key, None), property):
        obj = getattr(cfg, key)
        if isinstance(obj, dict) and cfg.get(key) is not None:
            # show configuration rather than objects
            obj = cfg.get(key)
    else:
        obj = cfg.get(key)
        if obj is None:
            raise click.BadParameter(f"No such property '{key}'", ctx, param_hint="PROPERTY")
    while rest:
        key, _, rest = rest.partition(".")
        try:
            obj = obj[key]
        except (KeyError, TypeError):
            try:
                obj = obj[int(key)]
            except (ValueError, IndexError, KeyError, TypeError):
                raise click.BadParameter(
                    f"No such property '{prop}'", ctx, param_hint="PROPERTY"
                ) from None

    try:
        output = obj.to_yaml(source)
    except AttributeError:
        if isinstance(obj, dict):
            output = "\n".join(f"{name}: {value!r}" for name, value in obj.items())
        else:
            output = str(obj)

    click.echo(output)
